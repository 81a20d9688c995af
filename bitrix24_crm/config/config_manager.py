"""
Модуль управления конфигурацией клиента Битрикс24
Поддерживает:
- Чтение конфигурации из INI файла
- Шифрование/дешифрование секрета вебхука (Fernet)
- Валидацию параметров
- Генерацию ключа шифрования
"""

import configparser
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class ConfigValidationError(Exception):
    """Ошибка валидации конфигурации"""
    pass


class ConfigManager:
    """Менеджер конфигурации с поддержкой шифрования"""

    # Поля, которые нужно шифровать
    ENCRYPTED_FIELDS = [
        ('Bitrix24', 'webhook'),
    ]

    # Обязательные поля для проверки
    REQUIRED_FIELDS = [
        ('Bitrix24', 'base_url', 'URL портала Битрикс24'),
        ('Bitrix24', 'user_id', 'ID пользователя вебхука'),
        ('Bitrix24', 'webhook', 'Секрет вебхука'),
    ]

    def __init__(self, config_path: str = "config.ini"):
        self.config_path = Path(config_path)
        self.config = configparser.ConfigParser(interpolation=None)

        if not self.config_path.exists():
            raise FileNotFoundError(
                f"Файл конфигурации {self.config_path} не найден. "
                f"Скопируйте config.example.ini в config.ini и заполните параметры."
            )

        self.config.read(self.config_path, encoding='utf-8')

        self.cipher = self._init_encryption()

        # Шифруем секреты при первом запуске
        self._encrypt_sensitive_data()

        logger.info(f"Конфигурация загружена из {self.config_path}")

    def _init_encryption(self) -> Fernet:
        """Инициализирует систему шифрования"""
        if not self.config.has_section('Security'):
            self.config.add_section('Security')

        encryption_key = self.config.get('Security', 'encryption_key', fallback='')

        if not encryption_key:
            encryption_key = Fernet.generate_key().decode()
            self.config.set('Security', 'encryption_key', encryption_key)
            self._save_config()
            logger.info("Сгенерирован новый ключ шифрования")

        return Fernet(encryption_key.encode())

    def _save_config(self):
        """Сохраняет конфигурацию в файл"""
        with open(self.config_path, 'w', encoding='utf-8') as f:
            self.config.write(f)

    def _is_encrypted(self, value: str) -> bool:
        """Проверяет, зашифрован ли текст"""
        if not value:
            return False
        # Токены Fernet начинаются с gAAAAA (base64)
        return value.startswith('gAAAAA')

    def _encrypt_sensitive_data(self):
        """Шифрует чувствительные данные при первом запуске"""
        modified = False

        for section, option in self.ENCRYPTED_FIELDS:
            if self.config.has_option(section, option):
                value = self.config.get(section, option)

                if value and not self._is_encrypted(value):
                    encrypted_value = self.cipher.encrypt(value.encode()).decode()
                    self.config.set(section, option, encrypted_value)
                    modified = True

        if modified:
            self._save_config()
            logger.info("Секреты в конфигурации зашифрованы")

    def _decrypt_value(self, value: str) -> str:
        """Дешифрует значение"""
        if not value or not self._is_encrypted(value):
            return value

        try:
            return self.cipher.decrypt(value.encode()).decode()
        except InvalidToken as e:
            raise ConfigValidationError(
                "Не удалось дешифровать значение: ключ шифрования не подходит"
            ) from e

    def get(self, section: str, option: str, fallback: Any = None) -> Any:
        """Получает значение из конфигурации с дешифровкой"""
        value = self.config.get(section, option, fallback=fallback)

        if (section, option) in self.ENCRYPTED_FIELDS:
            value = self._decrypt_value(value)

        return value

    def getint(self, section: str, option: str, fallback: int = 0) -> int:
        """Получает целое число"""
        return self.config.getint(section, option, fallback=fallback)

    def getboolean(self, section: str, option: str, fallback: bool = False) -> bool:
        """Получает булево значение"""
        return self.config.getboolean(section, option, fallback=fallback)

    # Удобные методы для получения конфигурации по секциям

    def get_bitrix24_config(self) -> Dict[str, Any]:
        """Возвращает конфигурацию Битрикс24"""
        return {
            'base_url': self.get('Bitrix24', 'base_url', ''),
            'user_id': self.get('Bitrix24', 'user_id', ''),
            'webhook': self.get('Bitrix24', 'webhook', ''),
            'timeout': self.getint('Bitrix24', 'timeout', 30),
            'verify_ssl': self.getboolean('Bitrix24', 'verify_ssl', True)
        }

    def get_logging_config(self) -> Dict[str, Any]:
        """Возвращает конфигурацию логирования"""
        return {
            'level': self.get('Logging', 'level', 'INFO'),
            'log_dir': self.get('Logging', 'log_dir', 'logs'),
            'rotation_days': self.getint('Logging', 'rotation_days', 30),
            'mask_personal_data': self.getboolean('Logging', 'mask_personal_data', True)
        }

    def validate_config(self) -> List[str]:
        """Валидирует конфигурацию и возвращает список ошибок"""
        errors = []

        for section, option, description in self.REQUIRED_FIELDS:
            value = self.config.get(section, option, fallback='').strip()
            if not value:
                errors.append(f"{section}.{option} не указан ({description})")

        base_url = self.config.get('Bitrix24', 'base_url', fallback='').strip()
        if base_url and not base_url.startswith(('http://', 'https://')):
            errors.append("Bitrix24.base_url должен начинаться с http:// или https://")

        try:
            timeout = self.getint('Bitrix24', 'timeout', 30)
            if timeout <= 0:
                errors.append(f"Некорректный Bitrix24.timeout: {timeout} (должен быть > 0)")
        except ValueError as e:
            errors.append(f"Ошибка типа данных в Bitrix24.timeout: {e}")

        return errors


# Singleton instance
_config_instance: Optional[ConfigManager] = None


def get_config(config_path: str = "config.ini") -> ConfigManager:
    """Возвращает singleton instance конфигурации"""
    global _config_instance

    if _config_instance is None:
        _config_instance = ConfigManager(config_path)

    return _config_instance


def reset_config():
    """Сбрасывает singleton конфигурации (для тестов)"""
    global _config_instance
    _config_instance = None
