"""Тесты логгера с маскированием персональных данных."""

import logging

import pytest

from bitrix24_crm.logger.custom_logger import (
    PACKAGE_LOGGER_NAME,
    PersonalDataMaskingFormatter,
    ThreadSafeLogger,
    get_logger,
    setup_logging,
)


@pytest.fixture(autouse=True)
def _reset_logger():
    ThreadSafeLogger.reset()
    yield
    ThreadSafeLogger.reset()


def _format(message: str) -> str:
    record = logging.LogRecord("test", logging.INFO, __file__, 1, message, None, None)
    return PersonalDataMaskingFormatter().format(record)


def test_masks_phone():
    formatted = _format("Найден контакт по телефону +79991234567")

    assert "9991234567" not in formatted
    assert "+7XXX***XX67" in formatted


def test_masks_international_phone():
    formatted = _format("Найден контакт по телефону +380441234567")

    assert "0441234" not in formatted
    assert "+***67" in formatted


def test_masks_email():
    formatted = _format("Найден контакт по email ivan.petrov@example.com")

    assert "ivan.petrov" not in formatted
    assert "@example.com" in formatted


def test_masks_webhook_secret():
    formatted = _format("GET https://example.bitrix24.ru/rest/7/abcdef123456/crm.deal.add.json")

    assert "abcdef123456" not in formatted
    assert "/rest/7/***/crm.deal.add.json" in formatted


def test_get_logger_is_singleton():
    first = get_logger(name="bitrix24_crm_test")

    assert get_logger(name="bitrix24_crm_test") is first
    assert first.propagate is False


def test_get_logger_writes_file_and_cleans_old(tmp_path):
    old_file = tmp_path / "bitrix24_log_2000-01-01.txt"
    old_file.write_text("old", encoding="utf-8")

    logger = get_logger(name="bitrix24_crm_test", log_dir=str(tmp_path), rotation_days=30)
    logger.info("запись")

    assert not old_file.exists()
    assert list(tmp_path.glob("bitrix24_log_*.txt"))


def test_setup_logging_uses_config(tmp_path):
    class FakeConfig:
        def get_logging_config(self):
            return {
                "level": "DEBUG",
                "log_dir": str(tmp_path),
                "rotation_days": 7,
                "mask_personal_data": False,
            }

    logger = setup_logging(FakeConfig())

    assert logger.name == PACKAGE_LOGGER_NAME
    assert logger.level == logging.DEBUG
