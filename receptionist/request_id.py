from __future__ import annotations

import logging
import secrets
import string
import time
from typing import Mapping

_BASE36 = string.digits + string.ascii_lowercase
_HEADERS = ("x-request-id", "x-trace-id", "x-correlation-id")


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_request_id() -> str:
    millis = int(time.time() * 1000)
    random_part = "".join(secrets.choice(_BASE36) for _ in range(8))
    return f"req_{_base36(millis)}_{random_part}"


def get_or_create_request_id(headers: Mapping[str, str]) -> str:
    for name in _HEADERS:
        existing = headers.get(name)
        if existing:
            return existing
    return generate_request_id()


class RequestLogger(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        return f"[{self.extra['request_id']}] {msg}", kwargs


def request_logger(logger: logging.Logger, request_id: str) -> RequestLogger:
    return RequestLogger(logger, {"request_id": request_id})
