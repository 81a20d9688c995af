"""Общие настройки и фикстуры тестов."""

import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from bitrix24_crm.bitrix.api_client import Bitrix24Client  # noqa: E402


class FakeResponse:
    """Упрощённый ответ, совместимый с requests.Response."""

    def __init__(self, status_code: int = 200, text: str = "") -> None:
        self.status_code = status_code
        self.text = text

    def json(self) -> Any:
        return json.loads(self.text)


def ok(result: Any) -> FakeResponse:
    """Успешный ответ Битрикс24 с полем result."""

    return FakeResponse(200, json.dumps({"result": result}))


def api_error(code: str, description: Optional[str] = None) -> FakeResponse:
    """Ответ Битрикс24 с полем error."""

    body: Dict[str, Any] = {"error": code}
    if description is not None:
        body["error_description"] = description
    return FakeResponse(200, json.dumps(body))


class FakeTransport:
    """Подмена requests.request: отдаёт ответы по очереди и запоминает вызовы."""

    def __init__(self) -> None:
        self.responses: List[Any] = []
        self.calls: List[Dict[str, Any]] = []

    def queue(self, *responses: Any) -> "FakeTransport":
        self.responses.extend(responses)
        return self

    def __call__(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append({"method": method, "url": url, **kwargs})
        if not self.responses:
            raise AssertionError(f"Неожиданный запрос {method} {url}")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    @property
    def endpoints(self) -> List[str]:
        return [call["url"].rsplit("/", 1)[-1] for call in self.calls]

    def body(self, index: int = -1) -> Dict[str, Any]:
        return json.loads(self.calls[index]["data"].decode("utf-8"))


@pytest.fixture
def transport(monkeypatch: pytest.MonkeyPatch) -> FakeTransport:
    """Подменить сетевой вызов клиента."""

    fake = FakeTransport()
    monkeypatch.setattr("bitrix24_crm.bitrix.api_client.requests.request", fake)
    return fake


@pytest.fixture
def client() -> Bitrix24Client:
    """Клиент с тестовыми параметрами вебхука."""

    return Bitrix24Client("https://example.bitrix24.ru/", "7", "s3cr/et")
