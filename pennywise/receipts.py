"""Receipt scanning through a generative AI model.

The model call is opaque: whatever it answers is parsed into ``Ok`` with the
extracted fields or ``Err`` with one of three failure kinds. Callers never
receive a partially filled receipt.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Protocol, Union

import google.generativeai as genai
import structlog
from google.api_core import exceptions as google_exceptions

from pennywise.errors import ExternalServiceError
from pennywise.schemas import to_naive

DEFAULT_CATEGORY = "other-expense"

RECEIPT_PROMPT = """
Analyze this receipt image and extract the following information in JSON format:
- Total amount (just the number)
- Date (in ISO format)
- Description or items purchased (brief summary)
- Merchant/store name
- Suggested category (one of: housing,transportation,groceries,utilities,entertainment,food,shopping,healthcare,education,personal,travel,insurance,gifts,bills,other-expense)

Only respond with valid JSON in this exact format:
{
  "amount": number,
  "date": "ISO date string",
  "description": "string",
  "merchantName": "string",
  "category": "string"
}

If it's not a receipt, return an empty object.
"""

_FENCE = re.compile(r"```(?:json)?")

logger = structlog.get_logger(__name__)


class ScanErrorKind(str, Enum):
    UNREACHABLE = "unreachable"
    MALFORMED_RESPONSE = "malformed_response"
    NOT_A_RECEIPT = "not_a_receipt"


@dataclass(frozen=True)
class ReceiptData:
    amount: Decimal
    date: datetime
    description: str
    merchant_name: str
    category: str


@dataclass(frozen=True)
class Ok:
    value: ReceiptData


@dataclass(frozen=True)
class Err:
    kind: ScanErrorKind
    detail: str = ""


ScanResult = Union[Ok, Err]


class ResponseFormatError(ExternalServiceError):
    """The service answered, but not in the shape of a model response."""


class GenerativeClient(Protocol):
    def generate_text(self, prompt: str) -> str:
        ...

    def extract(self, file_bytes: bytes, mime_type: str, prompt: str) -> str:
        ...


@dataclass
class GeminiClient:
    api_key: str
    model: str = "gemini-2.5-flash"
    timeout: float = 30.0
    _model: Any = field(init=False, repr=False)

    def __post_init__(self) -> None:
        genai.configure(api_key=self.api_key)
        self._model = genai.GenerativeModel(model_name=self.model)

    def generate_text(self, prompt: str) -> str:
        return self._generate([prompt])

    def extract(self, file_bytes: bytes, mime_type: str, prompt: str) -> str:
        return self._generate([{"mime_type": mime_type, "data": file_bytes}, prompt])

    def _generate(self, contents: list) -> str:
        try:
            response = self._model.generate_content(
                contents, request_options={"timeout": self.timeout}
            )
        except google_exceptions.GoogleAPIError as exc:
            raise ExternalServiceError("Gemini API unavailable") from exc
        try:
            # raises ValueError when the prompt was blocked or no candidate came back
            return response.text
        except ValueError as exc:
            raise ResponseFormatError("Gemini response missing candidates") from exc


def strip_fences(text: str) -> str:
    return _FENCE.sub("", text).strip()


def parse_receipt_response(text: str) -> ScanResult:
    try:
        parsed = json.loads(strip_fences(text))
    except json.JSONDecodeError:
        return Err(ScanErrorKind.MALFORMED_RESPONSE, "Response was not valid JSON.")
    if not isinstance(parsed, dict):
        return Err(ScanErrorKind.MALFORMED_RESPONSE, "Response was not a JSON object.")

    raw_amount = parsed.get("amount")
    raw_date = parsed.get("date")
    if not raw_amount or not raw_date:
        return Err(ScanErrorKind.NOT_A_RECEIPT, "No amount or date found.")

    try:
        amount = Decimal(str(raw_amount))
    except InvalidOperation:
        return Err(ScanErrorKind.MALFORMED_RESPONSE, f"Invalid amount: {raw_amount!r}")
    if not amount.is_finite() or amount <= 0:
        return Err(ScanErrorKind.MALFORMED_RESPONSE, f"Invalid amount: {raw_amount!r}")

    try:
        receipt_date = to_naive(datetime.fromisoformat(str(raw_date).replace("Z", "+00:00")))
    except ValueError:
        return Err(ScanErrorKind.MALFORMED_RESPONSE, f"Invalid date: {raw_date!r}")

    return Ok(
        ReceiptData(
            amount=amount,
            date=receipt_date,
            description=str(parsed.get("description") or ""),
            merchant_name=str(parsed.get("merchantName") or ""),
            category=str(parsed.get("category") or DEFAULT_CATEGORY),
        )
    )


def scan_receipt(client: GenerativeClient, file_bytes: bytes, mime_type: str) -> ScanResult:
    if not file_bytes:
        return Err(ScanErrorKind.NOT_A_RECEIPT, "Empty upload.")
    try:
        text = client.extract(file_bytes, mime_type, RECEIPT_PROMPT)
    except ResponseFormatError as exc:
        logger.warning("receipt_scan_failed", kind=ScanErrorKind.MALFORMED_RESPONSE.value, error=str(exc))
        return Err(ScanErrorKind.MALFORMED_RESPONSE, str(exc))
    except ExternalServiceError as exc:
        logger.warning("receipt_scan_failed", kind=ScanErrorKind.UNREACHABLE.value, error=str(exc))
        return Err(ScanErrorKind.UNREACHABLE, str(exc))

    result = parse_receipt_response(text)
    if isinstance(result, Err):
        logger.info("receipt_scan_rejected", kind=result.kind.value, detail=result.detail)
    return result
