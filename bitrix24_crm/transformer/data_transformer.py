"""
Модуль преобразования данных для CRM Битрикс24

Функции:
- Нормализация телефонов (+7XXXXXXXXXX)
- Формирование полей контакта (NAME, PHONE, EMAIL)
- Извлечение первого телефона/email из полей контакта
"""

import re
import logging
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)


class PhoneNormalizer:
    """Нормализация телефонных номеров"""

    @staticmethod
    def normalize(phone: Optional[str]) -> Optional[str]:
        """
        Нормализует телефон

        Оставляет только цифры и ведущий '+', российские номера из 11 цифр
        приводит к формату +7XXXXXXXXXX. Остальные номера возвращаются
        очищенными, но без изменения кода страны.

        Args:
            phone: Исходный телефон (может быть в любом формате)

        Returns:
            Нормализованный телефон или None для пустого значения

        Examples:
            8 (999) 123-45-67 → +79991234567
            79991234567       → +79991234567
            +7 999 123 45 67  → +79991234567
            +380 44 123 4567  → +380441234567
        """
        if not phone:
            return None

        cleaned = re.sub(r'[^\d+]', '', phone)
        digits = cleaned.replace('+', '')

        if not digits:
            return None

        if cleaned.startswith('+'):
            return f'+{digits}'

        # 8XXXXXXXXXX → +7XXXXXXXXXX
        if len(digits) == 11 and digits.startswith('8'):
            return f'+7{digits[1:]}'

        # 7XXXXXXXXXX → +7XXXXXXXXXX
        if len(digits) == 11 and digits.startswith('7'):
            return f'+{digits}'

        return digits


class ContactFieldsBuilder:
    """Формирование и разбор полей контакта"""

    PHONE_VALUE_TYPE = 'MOBILE'
    EMAIL_VALUE_TYPE = 'WORK'

    @staticmethod
    def build(name: str, phone: Optional[str] = None, email: Optional[str] = None) -> Dict[str, Any]:
        """
        Формирует поля нового контакта

        Args:
            name: Имя контакта
            phone: Телефон (будет нормализован)
            email: Email

        Returns:
            Поля для crm.contact.add
        """
        fields: Dict[str, Any] = {'NAME': name}

        if phone:
            fields['PHONE'] = [{
                'VALUE': PhoneNormalizer.normalize(phone),
                'VALUE_TYPE': ContactFieldsBuilder.PHONE_VALUE_TYPE,
            }]

        if email:
            fields['EMAIL'] = [{
                'VALUE': email,
                'VALUE_TYPE': ContactFieldsBuilder.EMAIL_VALUE_TYPE,
            }]

        return fields

    @staticmethod
    def first_value(fields: Mapping[str, Any], comm_type: str) -> Optional[str]:
        """
        Возвращает первое значение мультиполя (PHONE, EMAIL)

        Args:
            fields: Поля контакта
            comm_type: Код мультиполя

        Returns:
            Значение VALUE первого элемента или None
        """
        entries = fields.get(comm_type)
        if not entries or not isinstance(entries, (list, tuple)):
            return None

        first = entries[0]
        if not isinstance(first, Mapping):
            return None

        value = first.get('VALUE')
        return str(value) if value else None
