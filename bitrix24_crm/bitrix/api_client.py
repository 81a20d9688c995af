"""
Модуль взаимодействия с REST API Битрикс24 через входящий вебхук

Функции:
- Централизованный HTTP-запрос с проверкой HTTP-кодов и ошибок API
- GET (query string) и POST (JSON body)
- Товары: поиск по имени, создание, товарные позиции лидов и сделок
- Лиды и сделки: создание с принудительным ответственным
- Контакты: поиск по телефону/email, создание с контролем дублей
- Метаданные: поля сущностей, поиск кода пользовательского поля
"""

import json
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import quote

import requests

from bitrix24_crm.transformer.data_transformer import ContactFieldsBuilder, PhoneNormalizer

logger = logging.getLogger(__name__)


class Bitrix24Error(Exception):
    """Базовая ошибка API Битрикс24"""

    @property
    def is_duplicate(self) -> bool:
        """Сообщение указывает на дубль (контроль дублей Битрикс24)"""
        return 'duplicate' in str(self).lower()


class Bitrix24TransportError(Bitrix24Error):
    """Сетевая ошибка: соединение, DNS, таймаут"""

    def __init__(self, detail: str):
        super().__init__(f"transport error: {detail}")
        self.detail = detail


class Bitrix24HTTPError(Bitrix24Error):
    """HTTP статус >= 400"""

    def __init__(self, status_code: int, body: str):
        super().__init__(f"HTTP {status_code}: {body}")
        self.status_code = status_code
        self.body = body


class Bitrix24DecodeError(Bitrix24Error):
    """Ответ не является корректным JSON или содержит неожиданный результат"""

    def __init__(self, detail: str):
        super().__init__(f"decode error: {detail}")
        self.detail = detail


class Bitrix24EncodeError(Bitrix24Error):
    """Параметры запроса не сериализуются в JSON"""

    def __init__(self, detail: str):
        super().__init__(f"encode error: {detail}")
        self.detail = detail


class Bitrix24APIError(Bitrix24Error):
    """Ответ API содержит поле error"""

    def __init__(self, code: str, description: Optional[str] = None):
        super().__init__(f"API error: {code} — {description or 'unknown'}")
        self.code = code
        self.description = description


class Bitrix24InvalidArgumentError(Bitrix24Error, ValueError):
    """Некорректный аргумент; запрос к API не выполняется"""
    pass


def build_query_params(data: Mapping[str, Any], prefix: Optional[str] = None) -> List[Tuple[str, str]]:
    """
    Разворачивает вложенные параметры в пары для query string

    Использует скобочную нотацию, которую понимает Битрикс24:
    {'filter': {'NAME': 'x'}, 'select': ['ID']} → filter[NAME]=x, select[0]=ID

    Args:
        data: Параметры запроса
        prefix: Имя родительского ключа

    Returns:
        Список пар (ключ, значение)
    """
    pairs: List[Tuple[str, str]] = []

    for key, value in data.items():
        name = f"{prefix}[{key}]" if prefix else str(key)

        if value is None:
            continue
        if isinstance(value, Mapping):
            pairs.extend(build_query_params(value, name))
        elif isinstance(value, (list, tuple)):
            pairs.extend(build_query_params(dict(enumerate(value)), name))
        elif isinstance(value, bool):
            pairs.append((name, '1' if value else '0'))
        else:
            pairs.append((name, str(value)))

    return pairs


class Bitrix24Client:
    """
    Клиент для работы с CRM Битрикс24 через входящий webhook

    Каждый публичный метод выполняет один (в сценарии дублей контакта до трех)
    последовательный запрос. Повторов, пакетных запросов и кэширования нет.
    """

    ALLOWED_METHODS = ('GET', 'POST')

    ENTITY_FIELDS_ENDPOINTS = {
        'DEAL': 'crm.deal.fields.json',
        'LEAD': 'crm.lead.fields.json',
        'CONTACT': 'crm.contact.fields.json',
        'COMPANY': 'crm.company.fields.json',
    }

    USER_FIELD_PREFIX = 'UF_'
    USER_FIELD_LABEL_KEYS = ('title', 'formLabel', 'name', 'nameCase')

    DEFAULT_CONTACT_PARAMS = {'REGISTER_SONET_EVENT': 'Y'}

    def __init__(
        self,
        base_url: str,
        user_id: str,
        webhook: str,
        timeout: int = 30,
        verify_ssl: bool = True
    ):
        """
        Инициализация клиента

        Args:
            base_url: URL портала Битрикс24, например https://example.bitrix24.ru
            user_id: ID пользователя вебхука
            webhook: Секрет вебхука
            timeout: Таймаут HTTP-запроса в секундах
            verify_ssl: Проверять ли SSL-сертификат портала
        """
        if not base_url or not base_url.startswith(('http://', 'https://')):
            raise Bitrix24InvalidArgumentError(f"Невалидный base_url: {base_url}")

        self._base_url = base_url.rstrip('/')
        self._user_id = str(user_id)
        self._webhook = webhook
        self._timeout = timeout
        self._verify_ssl = verify_ssl

        if not verify_ssl:
            logger.warning("Проверка SSL-сертификата отключена")

        logger.info(f"Bitrix24Client инициализирован: {self._base_url} (пользователь вебхука: {self._user_id})")

    @classmethod
    def from_config(cls, config: Any) -> 'Bitrix24Client':
        """
        Создает клиент по секции [Bitrix24] конфигурации

        Args:
            config: ConfigManager (или объект с методом get_bitrix24_config)
        """
        b24_config = config.get_bitrix24_config()
        return cls(
            base_url=b24_config['base_url'],
            user_id=b24_config['user_id'],
            webhook=b24_config['webhook'],
            timeout=b24_config['timeout'],
            verify_ssl=b24_config['verify_ssl']
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def timeout(self) -> int:
        return self._timeout

    @property
    def verify_ssl(self) -> bool:
        return self._verify_ssl

    @property
    def _assigned_by_id(self) -> Any:
        """ID пользователя вебхука для поля ASSIGNED_BY_ID"""
        return int(self._user_id) if self._user_id.isdecimal() else self._user_id

    # ==============================
    # LOW-LEVEL HTTP LAYER
    # ==============================

    def _build_url(self, endpoint: str) -> str:
        return '{}/rest/{}/{}/{}'.format(
            self._base_url,
            quote(self._user_id, safe=''),
            quote(self._webhook, safe=''),
            endpoint.lstrip('/')
        )

    def _make_request(
        self,
        endpoint: str,
        data: Optional[Mapping[str, Any]] = None,
        method: str = 'GET'
    ) -> Any:
        """
        Выполняет HTTP-запрос к REST API Битрикс24

        Args:
            endpoint: Относительный путь REST-метода (например, 'crm.deal.add.json')
            data: Параметры запроса (query для GET, JSON body для POST)
            method: HTTP-метод, GET или POST

        Returns:
            Содержимое поля result или None

        Raises:
            Bitrix24TransportError: Сетевая ошибка
            Bitrix24HTTPError: HTTP статус >= 400
            Bitrix24DecodeError: Невалидный JSON в ответе
            Bitrix24APIError: Ответ содержит поле error
            Bitrix24EncodeError: Тело POST не сериализуется в JSON
        """
        method = method.upper()
        if method not in self.ALLOWED_METHODS:
            raise Bitrix24InvalidArgumentError(f"Неподдерживаемый HTTP-метод: {method}")

        url = self._build_url(endpoint)
        headers = {
            'Content-Type': 'application/json; charset=utf-8',
            'Accept': 'application/json',
        }

        params = None
        body = None
        if method == 'GET' and data:
            params = build_query_params(data)
        elif method == 'POST':
            try:
                body = json.dumps(dict(data or {}), ensure_ascii=False).encode('utf-8')
            except (TypeError, ValueError) as e:
                logger.error(f"Не удалось сериализовать тело запроса {endpoint}: {e}")
                raise Bitrix24EncodeError(str(e)) from e

        logger.debug(f"Запрос {method} {endpoint}")

        try:
            response = requests.request(
                method,
                url,
                params=params,
                data=body,
                headers=headers,
                timeout=self._timeout,
                verify=self._verify_ssl
            )
        except requests.RequestException as e:
            raise Bitrix24TransportError(str(e)) from e

        if response.status_code >= 400:
            raise Bitrix24HTTPError(response.status_code, response.text)

        try:
            decoded = response.json()
        except ValueError as e:  # JSONDecodeError является подклассом ValueError
            logger.error(
                f"Битрикс24 вернул невалидный JSON для {endpoint}. "
                f"Status: {response.status_code}, Content: {response.text[:500]}"
            )
            raise Bitrix24DecodeError(str(e)) from e

        if not isinstance(decoded, dict):
            return None

        if decoded.get('error'):
            raise Bitrix24APIError(str(decoded['error']), decoded.get('error_description'))

        return decoded.get('result')

    @staticmethod
    def _to_int(value: Any, endpoint: str) -> int:
        """Приводит result к ID сущности"""
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise Bitrix24DecodeError(f"unexpected result from {endpoint}: {value!r}") from e

    # ==============================
    # PRODUCTS
    # ==============================

    def find_product_id_by_name(self, product_name: str) -> Optional[int]:
        """
        Ищет ID товара по точному имени

        Args:
            product_name: Имя товара (поле NAME)

        Returns:
            ID товара или None, если не найден
        """
        result = self._make_request('crm.product.list.json', {
            'filter': {'NAME': product_name},
            'select': ['ID', 'NAME'],
        }, 'GET')

        if isinstance(result, list) and result:
            first = result[0]
            if isinstance(first, Mapping) and first.get('ID') is not None:
                return self._to_int(first['ID'], 'crm.product.list.json')

        logger.info(f"Товар '{product_name}' не найден")
        return None

    def create_product(self, product_fields: Mapping[str, Any]) -> int:
        """Создает товар и возвращает его ID"""
        result = self._make_request('crm.product.add.json', {'fields': dict(product_fields)}, 'POST')
        product_id = self._to_int(result, 'crm.product.add.json')
        logger.info(f"Создан товар ID={product_id}")
        return product_id

    # ==============================
    # LEADS
    # ==============================

    def add_lead(self, fields: Mapping[str, Any], params: Optional[Mapping[str, Any]] = None) -> int:
        """
        Создает лид

        Ответственным всегда назначается пользователь вебхука,
        переданное значение ASSIGNED_BY_ID игнорируется.

        Args:
            fields: Поля лида
            params: Доп. параметры (например, REGISTER_SONET_EVENT)

        Returns:
            ID созданного лида
        """
        return self._add_entity('crm.lead.add.json', fields, params, 'LEAD')

    def add_products_to_lead(self, lead_id: int, rows: Iterable[Mapping[str, Any]]) -> bool:
        """
        Задает товарные позиции лида

        Args:
            lead_id: ID лида
            rows: Товарные позиции (PRODUCT_ID, PRICE, QUANTITY, ...)

        Returns:
            True при успехе
        """
        return self._set_product_rows('crm.lead.productrows.set.json', lead_id, rows)

    # ==============================
    # CONTACTS
    # ==============================

    @staticmethod
    def normalize_phone(phone: Optional[str]) -> Optional[str]:
        """Нормализует телефон, см. PhoneNormalizer.normalize"""
        return PhoneNormalizer.normalize(phone)

    def _find_contact_by_comm(self, comm_type: str, value: str) -> Optional[int]:
        result = self._make_request('crm.duplicate.findbycomm.json', {
            'entity_type': 'CONTACT',
            'type': comm_type,
            'values': [value],
        }, 'POST')

        if not isinstance(result, Mapping):
            return None

        contacts = result.get('CONTACT')
        if isinstance(contacts, Mapping):
            contacts = list(contacts.values())
        if contacts and isinstance(contacts, list):
            return self._to_int(contacts[0], 'crm.duplicate.findbycomm.json')

        return None

    def find_contact_by_phone_or_email(self, phone: Optional[str], email: Optional[str]) -> Optional[int]:
        """
        Ищет контакт через crm.duplicate.findbycomm

        Сначала ищет по телефону, затем по email.

        Args:
            phone: Телефон (будет нормализован)
            email: Email

        Returns:
            ID первого найденного контакта или None
        """
        normalized_phone = self.normalize_phone(phone)
        if normalized_phone:
            contact_id = self._find_contact_by_comm('PHONE', normalized_phone)
            if contact_id:
                logger.info(f"Найден контакт ID={contact_id} по телефону {normalized_phone}")
                return contact_id

        if email:
            contact_id = self._find_contact_by_comm('EMAIL', email)
            if contact_id:
                logger.info(f"Найден контакт ID={contact_id} по email {email}")
                return contact_id

        return None

    def add_contact(self, fields: Mapping[str, Any], params: Optional[Mapping[str, Any]] = None) -> int:
        """
        Создает контакт с контролем дублей

        Если Битрикс24 отклоняет контакт как дубль, ищет существующий
        по первому телефону/email из полей и возвращает его ID.

        Args:
            fields: Поля контакта
            params: Доп. параметры (по умолчанию REGISTER_SONET_EVENT = 'Y')

        Returns:
            ID созданного или существующего контакта
        """
        request_params = dict(self.DEFAULT_CONTACT_PARAMS if params is None else params)
        request_params['ENABLE_DUPLICATE_CONTROL'] = 'Y'

        try:
            result = self._make_request('crm.contact.add.json', {
                'fields': dict(fields),
                'params': request_params,
            }, 'POST')
        except Bitrix24Error as e:
            if not e.is_duplicate:
                logger.error(f"Ошибка создания контакта: {e}")
                raise

            logger.warning(f"Контакт отклонен как дубль, ищем существующий: {e}")
            existing_id = self.find_contact_by_phone_or_email(
                ContactFieldsBuilder.first_value(fields, 'PHONE'),
                ContactFieldsBuilder.first_value(fields, 'EMAIL')
            )
            if existing_id:
                return existing_id

            logger.error(f"Дубль контакта не удалось определить: {e}")
            raise

        contact_id = self._to_int(result, 'crm.contact.add.json')
        logger.info(f"Создан контакт ID={contact_id}")
        return contact_id

    def get_or_create_contact(self, name: str, phone: Optional[str], email: Optional[str]) -> int:
        """
        Возвращает существующий контакт или создает новый

        Args:
            name: Имя
            phone: Телефон
            email: Email

        Returns:
            ID контакта
        """
        contact_id = self.find_contact_by_phone_or_email(phone, email)
        if contact_id:
            return contact_id

        return self.add_contact(ContactFieldsBuilder.build(name, phone, email))

    # ==============================
    # DEALS
    # ==============================

    def add_deal(self, fields: Mapping[str, Any], params: Optional[Mapping[str, Any]] = None) -> int:
        """
        Создает сделку. CONTACT_ID в fields связывает сделку с контактом.

        Args:
            fields: Поля сделки
            params: Доп. параметры

        Returns:
            ID сделки
        """
        return self._add_entity('crm.deal.add.json', fields, params, 'DEAL')

    def add_products_to_deal(self, deal_id: int, rows: Iterable[Mapping[str, Any]]) -> bool:
        """Задает товарные позиции сделки, True при успехе"""
        return self._set_product_rows('crm.deal.productrows.set.json', deal_id, rows)

    def create_deal_with_contact(
        self,
        deal_fields: Mapping[str, Any],
        contact_name: str,
        phone: Optional[str],
        email: Optional[str],
        params: Optional[Mapping[str, Any]] = None
    ) -> int:
        """
        Находит или создает контакт, затем создает привязанную к нему сделку

        Args:
            deal_fields: Поля сделки
            contact_name: Имя контакта
            phone: Телефон
            email: Email
            params: Параметры сделки

        Returns:
            ID сделки
        """
        contact_id = self.get_or_create_contact(contact_name, phone, email)

        fields = dict(deal_fields)
        fields['CONTACT_ID'] = contact_id
        return self.add_deal(fields, params)

    def _add_entity(
        self,
        endpoint: str,
        fields: Mapping[str, Any],
        params: Optional[Mapping[str, Any]],
        entity_title: str
    ) -> int:
        payload_fields = dict(fields)
        payload_fields['ASSIGNED_BY_ID'] = self._assigned_by_id

        try:
            result = self._make_request(endpoint, {
                'fields': payload_fields,
                'params': dict(params or {}),
            }, 'POST')
        except Bitrix24Error as e:
            logger.error(f"Ошибка создания {entity_title}: {e}")
            raise

        entity_id = self._to_int(result, endpoint)
        logger.info(f"Создана запись {entity_title} ID={entity_id}")
        return entity_id

    def _set_product_rows(self, endpoint: str, owner_id: int, rows: Iterable[Mapping[str, Any]]) -> bool:
        result = self._make_request(endpoint, {
            'id': int(owner_id),
            'rows': [dict(row) for row in rows],
        }, 'POST')
        return bool(result)

    # ==============================
    # META
    # ==============================

    def get_entity_fields(self, entity: str) -> Dict[str, Any]:
        """
        Возвращает описание полей сущности

        Args:
            entity: DEAL | LEAD | CONTACT | COMPANY (регистр не важен)

        Returns:
            Карта полей сущности

        Raises:
            Bitrix24InvalidArgumentError: Неподдерживаемая сущность
        """
        endpoint = self.ENTITY_FIELDS_ENDPOINTS.get(str(entity).upper())
        if endpoint is None:
            raise Bitrix24InvalidArgumentError(f"Unsupported entity: {entity}")

        result = self._make_request(endpoint, {}, 'GET')
        return dict(result) if isinstance(result, Mapping) else {}

    def find_user_field_code_by_title(self, entity: str, title: str) -> Optional[str]:
        """
        Ищет код пользовательского поля по видимому названию

        Сравнение без учета регистра и крайних пробелов по title, formLabel,
        name, nameCase. При совпадении у нескольких полей побеждает первое
        в порядке ответа API.

        Args:
            entity: Код сущности
            title: Название поля

        Returns:
            Код поля (например, 'UF_CRM_1706523456') или None
        """
        fields = self.get_entity_fields(entity)
        needle = title.strip().lower()

        for code, meta in fields.items():
            if not str(code).startswith(self.USER_FIELD_PREFIX) or not isinstance(meta, Mapping):
                continue

            for key in self.USER_FIELD_LABEL_KEYS:
                label = meta.get(key)
                if label and str(label).strip().lower() == needle:
                    return str(code)

        logger.info(f"Пользовательское поле '{title}' не найдено для {entity}")
        return None

    # ==============================
    # SERVICE
    # ==============================

    def test_connection(self) -> bool:
        """
        Проверяет доступность вебхука

        Returns:
            True если подключение успешно
        """
        try:
            self._make_request('profile.json', {}, 'GET')
            logger.info("Подключение к Битрикс24 успешно")
            return True

        except Bitrix24Error as e:
            logger.error(f"Ошибка подключения к Битрикс24: {e}")
            raise
