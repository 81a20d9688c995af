"""
Модуль логирования клиента Битрикс24 с маскированием персональных данных

Функции:
- Маскирование телефонов и email в сообщениях
- Маскирование секрета вебхука в URL вида /rest/{user}/{secret}/
- Thread-safe инициализация логгера пакета
- Ротация файлов логов по дате
"""

import logging
import re
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional

PACKAGE_LOGGER_NAME = 'bitrix24_crm'
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class PersonalDataMaskingFormatter(logging.Formatter):
    """
    Форматтер для маскирования персональных данных в логах

    Маскирует:
    - Телефоны (+7, 8, 7, с пробелами и скобками; международные +XXXXXXXXXXX)
    - Email адреса
    - Секрет вебхука в REST URL
    """

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None):
        super().__init__(fmt, datefmt)

        self.webhook_pattern = re.compile(r'(/rest/[^/\s]+/)([^/\s]+)(/)')
        self.phone_pattern = re.compile(
            r'(?<![\d+])(?:\+7|8|7)[\s\-]?\(?[0-9]{3}\)?[\s\-]?[0-9]{3}[\s\-]?[0-9]{2}[\s\-]?[0-9]{2}'
        )
        self.intl_phone_pattern = re.compile(r'(?<![\w+])\+?\d{10,15}(?!\d)')
        self.email_pattern = re.compile(
            r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b'
        )

    def _mask_webhook(self, text: str) -> str:
        """Скрывает секрет вебхука"""
        return self.webhook_pattern.sub(r'\1***\3', text)

    def _mask_phone(self, text: str) -> str:
        """Маскирует телефоны, оставляя последние две цифры"""
        def replacer(match):
            digits = re.sub(r'\D', '', match.group(0))
            return f"+7XXX***XX{digits[-2:]}"

        text = self.phone_pattern.sub(replacer, text)
        return self.intl_phone_pattern.sub(lambda m: f"+***{m.group(0)[-2:]}", text)

    def _mask_email(self, text: str) -> str:
        """Маскирует email"""
        def replacer(match):
            username, _, domain = match.group(0).partition('@')
            masked_username = username[0] + '*' * (len(username) - 1) if len(username) > 1 else '*'
            return f"{masked_username}@{domain}"

        return self.email_pattern.sub(replacer, text)

    def format(self, record: logging.LogRecord) -> str:
        """Форматирует запись с маскированием ПД"""
        formatted = super().format(record)

        # Секрет первым: он может содержать цифры, похожие на телефон
        formatted = self._mask_webhook(formatted)
        formatted = self._mask_phone(formatted)
        formatted = self._mask_email(formatted)

        return formatted


class ThreadSafeLogger:
    """
    Thread-safe singleton логгер пакета bitrix24_crm

    Использует double-checked locking. Модули пакета пишут в дочерние
    логгеры (logging.getLogger(__name__)), поэтому handlers настраиваются
    один раз на корневом логгере пакета.
    """

    _instance: Optional[logging.Logger] = None
    _lock = threading.Lock()
    _initialized = False

    @classmethod
    def get_logger(
        cls,
        name: str = PACKAGE_LOGGER_NAME,
        log_dir: Optional[str] = None,
        level: str = 'INFO',
        rotation_days: int = 30,
        mask_personal_data: bool = True
    ) -> logging.Logger:
        """
        Получает настроенный логгер

        Args:
            name: Имя логгера
            log_dir: Директория для файлов логов (None - только консоль)
            level: Уровень логирования
            rotation_days: Срок хранения файлов логов (дни)
            mask_personal_data: Маскировать ли персональные данные

        Returns:
            Настроенный экземпляр логгера
        """
        if cls._initialized and cls._instance is not None:
            return cls._instance

        with cls._lock:
            if cls._initialized and cls._instance is not None:
                return cls._instance

            logger = logging.getLogger(name)

            if logger.handlers:
                cls._instance = logger
                cls._initialized = True
                return logger

            logger.setLevel(getattr(logging, level.upper(), logging.INFO))
            logger.propagate = False

            if mask_personal_data:
                formatter = PersonalDataMaskingFormatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
            else:
                formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

            console_handler = logging.StreamHandler()
            console_handler.setLevel(logging.INFO)
            console_handler.setFormatter(formatter)
            logger.addHandler(console_handler)

            log_file = None
            if log_dir:
                log_path = Path(log_dir)
                log_path.mkdir(parents=True, exist_ok=True)

                log_file = log_path / f"bitrix24_log_{datetime.now().strftime('%Y-%m-%d')}.txt"
                file_handler = logging.FileHandler(log_file, encoding='utf-8')
                file_handler.setLevel(logging.DEBUG)
                file_handler.setFormatter(formatter)
                logger.addHandler(file_handler)

                cls._cleanup_old_logs(log_path, rotation_days)

            cls._instance = logger
            cls._initialized = True

            logger.info(f"Логгер инициализирован: {log_file or 'console'}")
            logger.info(f"Маскирование ПД: {'включено' if mask_personal_data else 'отключено'}")

            return logger

    @classmethod
    def reset(cls):
        """
        Сбрасывает singleton и закрывает handlers

        ВНИМАНИЕ: Использовать только в тестах!
        """
        with cls._lock:
            if cls._instance:
                for handler in cls._instance.handlers[:]:
                    handler.close()
                    cls._instance.removeHandler(handler)
                cls._instance.propagate = True

            cls._instance = None
            cls._initialized = False

    @staticmethod
    def _cleanup_old_logs(log_dir: Path, retention_days: int):
        """
        Удаляет файлы логов старше retention_days

        Args:
            log_dir: Директория с логами
            retention_days: Срок хранения (дни)
        """
        cutoff_date = datetime.now() - timedelta(days=retention_days)

        for log_file in log_dir.glob('bitrix24_log_*.txt'):
            try:
                date_str = log_file.stem.replace('bitrix24_log_', '')
                file_date = datetime.strptime(date_str, '%Y-%m-%d')

                if file_date < cutoff_date:
                    log_file.unlink()
                    logging.getLogger(PACKAGE_LOGGER_NAME).info(f"Удален старый лог-файл: {log_file}")

            except (ValueError, OSError) as e:
                logging.getLogger(PACKAGE_LOGGER_NAME).warning(f"Не удалось обработать файл {log_file}: {e}")


def get_logger(
    name: str = PACKAGE_LOGGER_NAME,
    log_dir: Optional[str] = None,
    level: str = 'INFO',
    rotation_days: int = 30,
    mask_personal_data: bool = True
) -> logging.Logger:
    """Функция-обертка для получения thread-safe логгера"""
    return ThreadSafeLogger.get_logger(
        name=name,
        log_dir=log_dir,
        level=level,
        rotation_days=rotation_days,
        mask_personal_data=mask_personal_data
    )


def setup_logging(config: Any) -> logging.Logger:
    """
    Настраивает логгер пакета по секции [Logging] конфигурации

    Args:
        config: ConfigManager (или объект с методом get_logging_config)

    Returns:
        Настроенный логгер пакета
    """
    logging_config = config.get_logging_config()
    return get_logger(
        name=PACKAGE_LOGGER_NAME,
        log_dir=logging_config['log_dir'],
        level=logging_config['level'],
        rotation_days=logging_config['rotation_days'],
        mask_personal_data=logging_config['mask_personal_data']
    )
