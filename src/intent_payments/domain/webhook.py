"""Normalization of provider webhook payloads.

Providers do not agree on where identifiers and statuses live in a callback body.
Each logical field is described by an ``ExtractionRule``: an ordered list of dotted
paths tried against the parsed JSON document, first non-empty value wins. The rules
are plain data so the lookup order can be tested without any transport.
"""

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from intent_payments.domain.exceptions import WebhookPayloadError
from intent_payments.domain.models import WebhookEvent
from intent_payments.domain.status import normalize_status_token


INVALID_PAYLOAD = "INVALID_PAYLOAD"
NO_ID = "NO_ID"


@dataclass(frozen=True)
class ExtractionRule:
    field: str
    paths: tuple[str, ...]

    def extract(self, document: Mapping[str, Any]) -> str | None:
        for path in self.paths:
            value = _lookup(document, path)
            if _is_present(value):
                return str(value)
        return None


ORDER_ID_RULE = ExtractionRule(
    field="order_id",
    paths=(
        "orderId",
        "order_id",
        "data.orderId",
        "data.order_id",
        "event.orderId",
        "event.order_id",
        "execution.orderId",
    ),
)

QUOTE_ID_RULE = ExtractionRule(
    field="quote_id",
    paths=(
        "quoteId",
        "quote_id",
        "data.quoteId",
        "data.quote_id",
        "event.quoteId",
        "event.quote_id",
        "execution.quoteId",
    ),
)

TX_ID_RULE = ExtractionRule(
    field="tx_id",
    paths=(
        "txId",
        "transactionHash",
        "data.txId",
        "data.transactionHash",
        "event.txId",
        "event.transactionHash",
        "execution.txId",
    ),
)

STATUS_RULE = ExtractionRule(
    field="status",
    paths=(
        "status",
        "state",
        "data.status",
        "data.state",
        "event.status",
        "event.state",
        "execution.status",
        "payload.status",
    ),
)

DEFAULT_RULES: tuple[ExtractionRule, ...] = (ORDER_ID_RULE, QUOTE_ID_RULE, TX_ID_RULE, STATUS_RULE)


def _lookup(document: Mapping[str, Any], path: str) -> Any:
    current: Any = document
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return None
        current = current[part]
    return current


def _is_present(value: Any) -> bool:
    if value is None or isinstance(value, (Mapping, list, bool)):
        return False
    return len(str(value)) > 0


def parse_payload(raw: bytes | str) -> Mapping[str, Any]:
    try:
        document = json.loads(raw)
    except (ValueError, TypeError) as e:
        raise WebhookPayloadError(INVALID_PAYLOAD, f"Webhook body is not valid JSON: {e}") from e
    if not isinstance(document, Mapping):
        raise WebhookPayloadError(INVALID_PAYLOAD, "Webhook body must be a JSON object")
    return document


def normalize_webhook(
    raw: bytes | str,
    rules: Sequence[ExtractionRule] = DEFAULT_RULES,
) -> WebhookEvent:
    """Extract a WebhookEvent from a raw provider callback body.

    Raises:
        WebhookPayloadError: ``INVALID_PAYLOAD`` when the body is not a JSON object,
            ``NO_ID`` when neither an order id nor a quote id can be found.
    """
    document = parse_payload(raw)
    values = {rule.field: rule.extract(document) for rule in rules}

    order_id = values.get("order_id")
    quote_id = values.get("quote_id")
    if not order_id and not quote_id:
        raise WebhookPayloadError(NO_ID, "Webhook carries neither an order id nor a quote id")

    return WebhookEvent(
        order_id=order_id,
        quote_id=quote_id,
        tx_id=values.get("tx_id"),
        upstream_status=normalize_status_token(values.get("status")),
    )
