# app/x402/policy.py
"""
Result validation policies.

A payment is only settled when the downstream service produced a result
worth paying for. Each resource names a policy kind in its catalog entry;
the policy inspects the decoded JSON body and returns a verdict.

Shared rules for every policy:
- the payload must be a JSON object
- a payload tagged "model": "fallback" is rejected when it carries none of
  the known content fields; a fallback that still answered is judged like
  any other result
- primary text containing an error marker is rejected
"""
import logging
from dataclasses import dataclass
from numbers import Number
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

ERROR_MARKERS: Tuple[str, ...] = ("could not process", "failed", "error")
SENTIMENT_LABELS = frozenset({"positive", "negative", "neutral"})
# Fields whose presence marks a result as having real content.
CONTENT_FIELDS: Tuple[str, ...] = ("temperature", "price", "translation", "sentiment", "result", "city")


@dataclass(frozen=True)
class PolicyVerdict:
    acceptable: bool
    reason: Optional[str] = None

    @classmethod
    def accept(cls) -> "PolicyVerdict":
        return cls(acceptable=True)

    @classmethod
    def reject(cls, reason: str) -> "PolicyVerdict":
        return cls(acceptable=False, reason=reason)


def _is_number(value: Any) -> bool:
    return isinstance(value, Number) and not isinstance(value, bool)


def _has_content(payload: Dict[str, Any]) -> bool:
    return any(payload.get(name) for name in CONTENT_FIELDS)


def _contains_error_marker(text: str) -> Optional[str]:
    lowered = text.lower()
    for marker in ERROR_MARKERS:
        if marker in lowered:
            return marker
    return None


class ResultPolicy:
    """Base policy: shared checks, then the kind-specific check()."""

    kind = "base"
    # Field holding the primary text, scanned for error markers.
    text_field: Optional[str] = None

    def evaluate(self, payload: Any) -> PolicyVerdict:
        if not isinstance(payload, dict):
            return PolicyVerdict.reject("Result is not a JSON object")

        if payload.get("model") == "fallback" and not _has_content(payload):
            return PolicyVerdict.reject("Result was produced by a fallback model with no content")

        if self.text_field is not None:
            text = payload.get(self.text_field)
            if isinstance(text, str):
                marker = _contains_error_marker(text)
                if marker:
                    return PolicyVerdict.reject(f"Result text contains error marker {marker!r}")

        return self.check(payload)

    def check(self, payload: Dict[str, Any]) -> PolicyVerdict:
        return PolicyVerdict.accept()


class MarketDataPolicy(ResultPolicy):
    kind = "market-data"

    def check(self, payload):
        if not _is_number(payload.get("price")):
            return PolicyVerdict.reject("Market data result has no numeric price")
        return PolicyVerdict.accept()


class WeatherPolicy(ResultPolicy):
    kind = "weather"

    def check(self, payload):
        temperature = payload.get("temperature")
        if temperature is None or temperature == "":
            return PolicyVerdict.reject("Weather result has no temperature")
        return PolicyVerdict.accept()


class TranslationPolicy(ResultPolicy):
    kind = "translation"
    text_field = "translation"

    def check(self, payload):
        translation = payload.get("translation")
        if not isinstance(translation, str) or not translation.strip():
            return PolicyVerdict.reject("Translation result is empty")
        return PolicyVerdict.accept()


class SentimentPolicy(ResultPolicy):
    kind = "sentiment"

    def check(self, payload):
        label = payload.get("sentiment")
        if not isinstance(label, str) or label.lower() not in SENTIMENT_LABELS:
            return PolicyVerdict.reject(f"Sentiment label {label!r} is not one of {sorted(SENTIMENT_LABELS)}")
        if not _is_number(payload.get("confidence")):
            return PolicyVerdict.reject("Sentiment result has no numeric confidence")
        return PolicyVerdict.accept()


class TextResultPolicy(ResultPolicy):
    kind = "text"
    text_field = "result"

    def check(self, payload):
        result = payload.get("result")
        if not isinstance(result, str) or not result.strip():
            return PolicyVerdict.reject("Text result is empty")
        return PolicyVerdict.accept()


class AcceptAnyPolicy(ResultPolicy):
    kind = "any"


POLICIES: Dict[str, ResultPolicy] = {
    policy.kind: policy
    for policy in (
        MarketDataPolicy(),
        WeatherPolicy(),
        TranslationPolicy(),
        SentimentPolicy(),
        TextResultPolicy(),
        AcceptAnyPolicy(),
    )
}


def get_policy(kind: str) -> ResultPolicy:
    """
    Look up a policy by kind.

    Raises:
        KeyError: if no policy is registered for the kind
    """
    try:
        return POLICIES[kind]
    except KeyError:
        raise KeyError(f"Unknown result policy: {kind!r}") from None
