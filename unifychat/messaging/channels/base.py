"""
base.py — Channel adapter contract and inbound extraction rules.

Every channel adapter:
    • send(request)              → SendResult   (never raises for transport failures)
    • normalize_inbound(payload) → NormalizedMessage | None   (None = malformed)
    • capabilities()             → ChannelCapabilities   (static)
    • validates its ChannelConfig once, at construction

An adapter whose configuration fails validation stays constructible but
is marked not-initialized: ``send`` returns a failed result without
touching the network and the registry reports the channel disabled.

═══════════════════════════════════════════════════════════════════════════
INBOUND EXTRACTION RULES
═══════════════════════════════════════════════════════════════════════════

Vendors name the same field differently across webhook types (Twilio
sends ``MessageSid`` on some callbacks and ``SmsSid`` on others). Each
adapter declares an ordered tuple of ``FieldRule`` per payload kind;
``extract_fields`` takes the first non-empty candidate key for every
rule and raises ``MalformedInboundError`` when a required field has none.

    FieldRule("from_address", ("From",), required=True)
    FieldRule("content", ("Body",), default="")
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Mapping, Optional, Sequence, Tuple

import httpx

from unifychat.core.config import ChannelConfig
from unifychat.core.errors import (
    ConfigurationError,
    MalformedInboundError,
    TransportError,
)
from unifychat.messaging.models import (
    Channel,
    ChannelCapabilities,
    NormalizedMessage,
    SendRequest,
    SendResult,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 15.0


# ═══════════════════════════════════════════════════════════════════════════
# Extraction Rules
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class FieldRule:
    """Ordered candidate keys for one normalized field."""
    name: str
    keys: Tuple[str, ...]
    required: bool = False
    default: Any = None


def extract_field(payload: Mapping[str, Any], rule: FieldRule, channel: str = "") -> Any:
    for key in rule.keys:
        value = payload.get(key)
        if value is None:
            continue
        if isinstance(value, str):
            value = value.strip()
            if not value:
                continue
        return value
    if rule.required:
        raise MalformedInboundError(
            channel or "unknown",
            f"missing {rule.name} (tried {', '.join(rule.keys)})",
        )
    return rule.default


def extract_fields(
    payload: Mapping[str, Any],
    rules: Sequence[FieldRule],
    channel: str = "",
) -> Dict[str, Any]:
    """Apply every rule in order; the first missing required field raises."""
    if not isinstance(payload, Mapping):
        raise MalformedInboundError(channel or "unknown", "payload is not an object")
    return {rule.name: extract_field(payload, rule, channel) for rule in rules}


# ═══════════════════════════════════════════════════════════════════════════
# Adapter Contract
# ═══════════════════════════════════════════════════════════════════════════

class ChannelAdapter(ABC):
    """
    Base class for one delivery channel.

    Subclasses set ``channel``, ``name``, ``CAPABILITIES`` and
    ``REQUIRED_CREDENTIALS`` and implement ``_send`` / ``_normalize``.
    The shared ``httpx.AsyncClient`` is created lazily unless one is
    injected (tests pass a client built on ``httpx.MockTransport``).
    """

    channel: ClassVar[Channel]
    name: ClassVar[str]
    CAPABILITIES: ClassVar[ChannelCapabilities]
    REQUIRED_CREDENTIALS: ClassVar[Tuple[str, ...]] = ()

    def __init__(
        self,
        config: ChannelConfig,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self.config_error: Optional[str] = None
        self._http_client = http_client
        self._owns_client = http_client is None
        self._timeout = float(
            config.settings.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS)
        )

        try:
            self.validate_config(config)
            self._initialized = True
        except ConfigurationError as exc:
            self._initialized = False
            self.config_error = exc.message
            logger.warning("%s adapter disabled: %s", self.name, exc.message)

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def credential(self, key: str) -> str:
        return self.config.credentials.get(key, "")

    def validate_config(self, config: ChannelConfig) -> None:
        """Raise ConfigurationError unless every required credential is present."""
        if not config.enabled:
            raise ConfigurationError(self.channel.value, "channel is disabled")
        missing = [k for k in self.REQUIRED_CREDENTIALS if not config.credentials.get(k)]
        if missing:
            raise ConfigurationError(
                self.channel.value, f"missing credentials: {', '.join(missing)}",
            )

    def capabilities(self) -> ChannelCapabilities:
        return self.CAPABILITIES

    # ── Outbound ──

    async def send(self, request: SendRequest) -> SendResult:
        if not self._initialized:
            return SendResult(
                success=False,
                error=f"{self.name} client not initialized. Check configuration.",
            )
        try:
            return await self._send(request)
        except TransportError as exc:
            logger.warning("%s send failed: %s", self.name, exc.reason)
            return SendResult(success=False, error=exc.reason, metadata=exc.details)
        except httpx.TimeoutException:
            logger.warning("%s send timed out after %.1fs", self.name, self._timeout)
            return SendResult(
                success=False,
                error=f"{self.name} request timed out after {self._timeout:.0f}s",
            )
        except httpx.HTTPError as exc:
            logger.warning("%s transport error: %s", self.name, exc)
            return SendResult(
                success=False,
                error=str(exc) or f"{self.name} transport error",
            )

    @abstractmethod
    async def _send(self, request: SendRequest) -> SendResult:
        """Perform the vendor call. May raise TransportError or httpx errors."""

    # ── Inbound ──

    def normalize_inbound(self, payload: Any) -> Optional[NormalizedMessage]:
        try:
            return self._normalize(payload)
        except MalformedInboundError as exc:
            logger.info("Dropping %s inbound payload: %s", self.channel.value, exc.message)
            return None
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            logger.warning(
                "Unparseable %s inbound payload: %s", self.channel.value, exc,
            )
            return None

    @abstractmethod
    def _normalize(self, payload: Any) -> NormalizedMessage:
        """Build a NormalizedMessage or raise MalformedInboundError."""

    # ── HTTP client ──

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client if this adapter created it."""
        if self._owns_client and self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()
