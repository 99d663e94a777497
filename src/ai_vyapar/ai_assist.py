"""AI-assisted data entry.

The generative-AI service and dictation are collaborators that may be absent
at any time (no API key, offline, unsupported platform). Their results only
ever land in draft objects (:class:`InvoiceDraft`, :class:`ImageSearchDraft`);
committing a draft goes through the normal transaction engine entry points.

Adapters never raise for an unavailable collaborator. They log the failure and
return ``None`` so manual entry keeps working.
"""

from __future__ import annotations

import base64
import json
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import requests

from . import core_logic, data_manager, log
from .constants import InvoiceStatus


API_ROOT = "https://generativelanguage.googleapis.com/v1beta"


class CollaboratorUnavailable(RuntimeError):
    """Raised when an external collaborator cannot serve a request."""


@dataclass(frozen=True)
class ParsedItem:
    product_name: str
    quantity: int


@dataclass(frozen=True)
class ParsedInvoice:
    """Structured reading of a free-text invoice command."""

    customer_name: str
    items: tuple[ParsedItem, ...] = ()


INVOICE_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "customerName": {
            "type": "STRING",
            "description": "The name of the customer.",
        },
        "items": {
            "type": "ARRAY",
            "description": "List of items for the invoice.",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "productName": {
                        "type": "STRING",
                        "description": "The name of the product, must be from the available products list.",
                    },
                    "quantity": {
                        "type": "INTEGER",
                        "description": "The quantity of the product.",
                    },
                },
                "required": ["productName", "quantity"],
            },
        },
    },
    "required": ["customerName", "items"],
}


def build_invoice_prompt(command: str, products: Sequence[data_manager.Product]) -> str:
    """Describe the catalog and the user's command for the parser model."""
    product_list = ", ".join(
        f"'{product.name}' (Price: {product.price}, Stock: {product.stock})" for product in products
    )
    return (
        "Parse the following user command to create an invoice.\n"
        f'User command: "{command}"\n\n'
        f"Available products are: {product_list}.\n\n"
        "Identify the customer's name and the products with their quantities.\n"
        "The product name in your response must exactly match one of the available product names.\n"
        "If a product in the command does not match any available products, ignore it.\n"
        "Respond in the requested JSON format."
    )


def build_image_prompt(products: Sequence[data_manager.Product]) -> str:
    names = ", ".join(product.name for product in products)
    return (
        "From the following list of products, which one best matches the product in this image? "
        "Respond with ONLY the exact product name from the list and nothing else.\n\n"
        f"Product list: [{names}]"
    )


def parse_invoice_payload(payload: Dict[str, Any]) -> ParsedInvoice:
    """Convert the model's JSON answer into a :class:`ParsedInvoice`.

    Raises:
        CollaboratorUnavailable: If the payload does not have the expected
            shape.
    """
    try:
        items = tuple(
            ParsedItem(product_name=str(item["productName"]), quantity=int(item["quantity"]))
            for item in payload["items"]
        )
        return ParsedInvoice(customer_name=str(payload["customerName"]), items=items)
    except (KeyError, TypeError, ValueError) as exc:
        raise CollaboratorUnavailable(f"Malformed invoice payload: {exc}") from exc


def match_product_name(name: str, products: Sequence[data_manager.Product]) -> Optional[data_manager.Product]:
    """Return the first product whose name equals ``name`` ignoring case."""
    wanted = name.strip().lower()
    for product in products:
        if product.name.lower() == wanted:
            return product
    return None


def resolve_parsed_items(
    parsed: ParsedInvoice,
    products: Sequence[data_manager.Product],
) -> List[core_logic.InvoiceLine]:
    """Map parsed product names onto catalog ids.

    Names must match a catalog product exactly, including case; anything else
    is dropped.
    """
    by_name: Dict[str, data_manager.Product] = {}
    for product in products:
        by_name.setdefault(product.name, product)

    lines = []
    for item in parsed.items:
        product = by_name.get(item.product_name)
        if product is None:
            log.info("Dropping unmatched product name '%s' from AI result", item.product_name)
            continue
        lines.append(core_logic.InvoiceLine(product_id=product.product_id, quantity=item.quantity))
    return lines


class AIAssistant(ABC):
    """Interface for the generative-AI collaborator."""

    @abstractmethod
    def parse_invoice_command(
        self,
        command: str,
        products: Sequence[data_manager.Product],
    ) -> Optional[ParsedInvoice]:
        """Read a free-text command; ``None`` when unavailable."""

    @abstractmethod
    def find_product_by_image(
        self,
        image: bytes,
        mime_type: str,
        products: Sequence[data_manager.Product],
    ) -> Optional[data_manager.Product]:
        """Match an image to a catalog product; ``None`` when unmatched or unavailable."""


class GeminiClient(AIAssistant):
    """Generative Language REST client.

    Every failure (missing key, network, HTTP status, unexpected body) is
    logged and reported as ``None`` to the caller.
    """

    def __init__(
        self,
        api_key: Optional[str],
        *,
        model: str = data_manager.DEFAULT_AI_MODEL,
        timeout: float = data_manager.DEFAULT_AI_TIMEOUT,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings: data_manager.ConfigSettings) -> "GeminiClient":
        """Build a client whose key comes from the configured environment variable."""
        api_key = os.environ.get(settings.api_key_env)
        if not api_key:
            log.warning(
                "%s environment variable not set; AI features will not work.",
                settings.api_key_env,
            )
        return cls(api_key, model=settings.ai_model, timeout=settings.ai_timeout)

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def generate(self, parts: List[Dict[str, Any]], generation_config: Optional[Dict[str, Any]] = None) -> str:
        """Call ``generateContent`` and return the first candidate's text.

        Raises:
            CollaboratorUnavailable: On a missing key, transport error, HTTP
                error status, or a response without text.
        """
        if not self.api_key:
            raise CollaboratorUnavailable("No API key configured")

        body: Dict[str, Any] = {"contents": [{"parts": parts}]}
        if generation_config:
            body["generationConfig"] = generation_config

        url = f"{API_ROOT}/models/{self.model}:generateContent"
        try:
            response = self.session.post(
                url,
                headers={"x-goog-api-key": self.api_key},
                json=body,
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as exc:
            raise CollaboratorUnavailable(f"Request to {self.model} failed: {exc}") from exc
        except ValueError as exc:
            raise CollaboratorUnavailable(f"Response from {self.model} was not JSON") from exc

        try:
            text = payload["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as exc:
            raise CollaboratorUnavailable(f"Response from {self.model} had no text") from exc
        return str(text).strip()

    def parse_invoice_command(
        self,
        command: str,
        products: Sequence[data_manager.Product],
    ) -> Optional[ParsedInvoice]:
        prompt = build_invoice_prompt(command, products)
        try:
            text = self.generate(
                [{"text": prompt}],
                {"responseMimeType": "application/json", "responseSchema": INVOICE_RESPONSE_SCHEMA},
            )
            try:
                payload = json.loads(text)
            except ValueError as exc:
                raise CollaboratorUnavailable(f"Invoice payload was not JSON: {exc}") from exc
            return parse_invoice_payload(payload)
        except CollaboratorUnavailable as exc:
            log.error("Error parsing invoice command with AI: %s", exc)
            return None

    def find_product_by_image(
        self,
        image: bytes,
        mime_type: str,
        products: Sequence[data_manager.Product],
    ) -> Optional[data_manager.Product]:
        image_part = {
            "inlineData": {
                "mimeType": mime_type,
                "data": base64.b64encode(image).decode("ascii"),
            }
        }
        try:
            text = self.generate([image_part, {"text": build_image_prompt(products)}])
        except CollaboratorUnavailable as exc:
            log.error("Error finding product by image with AI: %s", exc)
            return None

        product = match_product_name(text, products)
        if product is None:
            log.info("AI image answer '%s' matched no product", text)
        return product


@dataclass
class _Draft:
    """In-progress form state that accepts AI results.

    Each request takes a token from :meth:`begin_request`. Starting another
    request or closing the draft makes older tokens stale, and stale results
    are discarded.
    """

    closed: bool = False
    _generation: int = field(default=0, repr=False)

    def begin_request(self) -> int:
        self._generation += 1
        return self._generation

    def is_current(self, token: int) -> bool:
        return not self.closed and token == self._generation

    def close(self) -> None:
        self.closed = True
        self._generation += 1


@dataclass
class InvoiceDraft(_Draft):
    """Invoice form being filled in by hand, by dictation, or by the AI parser."""

    customer_name: str = ""
    command: str = ""
    status: InvoiceStatus = InvoiceStatus.DUE
    lines: List[core_logic.InvoiceLine] = field(default_factory=list)

    def append_transcript(self, transcript: str) -> None:
        self.command = merge_transcript(self.command, transcript)

    def apply_parsed(
        self,
        token: int,
        parsed: Optional[ParsedInvoice],
        products: Sequence[data_manager.Product],
    ) -> bool:
        """Fill the draft from a parser result.

        Returns:
            bool: ``True`` when applied; ``False`` when the result is missing
                or the request is stale.
        """
        if not self.is_current(token):
            log.info("Discarding stale AI invoice result (request %d)", token)
            return False
        if parsed is None:
            return False
        self.customer_name = parsed.customer_name
        self.lines = resolve_parsed_items(parsed, products)
        return True

    def to_command(self) -> core_logic.CreateInvoiceCommand:
        return core_logic.CreateInvoiceCommand(
            customer_name=self.customer_name,
            items=tuple(self.lines),
            status=self.status,
        )


@dataclass
class ImageSearchDraft(_Draft):
    """Product search narrowed by an image match."""

    result: Optional[data_manager.Product] = None
    error: Optional[str] = None

    def apply_match(self, token: int, product: Optional[data_manager.Product]) -> bool:
        if not self.is_current(token):
            log.info("Discarding stale AI image result (request %d)", token)
            return False
        self.result = product
        self.error = None if product is not None else "AI search failed, try again"
        return True


def fill_invoice_draft(
    assistant: AIAssistant,
    draft: InvoiceDraft,
    products: Sequence[data_manager.Product],
) -> bool:
    """Run the draft's command through ``assistant`` and apply the answer."""
    if not draft.command.strip():
        return False
    token = draft.begin_request()
    parsed = assistant.parse_invoice_command(draft.command, products)
    return draft.apply_parsed(token, parsed, products)


def search_by_image(
    assistant: AIAssistant,
    draft: ImageSearchDraft,
    image: bytes,
    mime_type: str,
    products: Sequence[data_manager.Product],
) -> bool:
    token = draft.begin_request()
    product = assistant.find_product_by_image(image, mime_type, products)
    return draft.apply_match(token, product)


def merge_transcript(existing: str, transcript: str) -> str:
    """Append a finalized transcript to existing text, space separated."""
    transcript = transcript.strip()
    if not transcript:
        return existing
    return f"{existing} {transcript}" if existing else transcript


class Dictation:
    """One-shot speech dictation session.

    Platform integrations call :meth:`finalize` when the recognizer produces a
    final result. Results arriving while not listening, including any that
    were still pending when :meth:`stop` was called, are discarded.
    """

    language = "en-IN"

    def __init__(self) -> None:
        self.listening = False
        self.transcript = ""
        self.error: Optional[str] = None

    def is_supported(self) -> bool:
        return True

    def start(self) -> None:
        if not self.is_supported():
            self.error = "Speech recognition is not supported on this platform."
            raise CollaboratorUnavailable(self.error)
        self.transcript = ""
        self.error = None
        self.listening = True

    def stop(self) -> None:
        self.listening = False

    def finalize(self, text: str) -> Optional[str]:
        """Accept a final recognition result; ``None`` if not listening."""
        if not self.listening:
            log.debug("Ignoring dictation result received after stop")
            return None
        self.transcript = text.strip()
        self.listening = False
        return self.transcript

    def fail(self, reason: str) -> None:
        log.error("Speech recognition error: %s", reason)
        self.error = f"Speech recognition error: {reason}"
        self.listening = False


class UnsupportedDictation(Dictation):
    """Dictation stand-in for platforms without a recognizer."""

    def is_supported(self) -> bool:
        return False
