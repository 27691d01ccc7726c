"""Lead-generation actions gated by the client and server rate limiters."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import math
from typing import Awaitable, Callable, Optional
from urllib.parse import quote

from ..config import settings
from ..rate_limit import Clock, now_ms
from ..security_logger import detect_suspicious_pattern, log_xss_attempt
from .limiter import ClientRateLimitConfig, ClientRateLimiter
from .server_check import ServerCheckResult, check_server_rate_limit
from .storage import DurableStorage

logger = logging.getLogger("muma.client.leads")

ServerCheck = Callable[[str], Awaitable[ServerCheckResult]]

WHATSAPP_RATE_LIMIT = ClientRateLimitConfig(max_actions=5, window_ms=60_000, key="whatsapp_clicks")
CONTACT_RATE_LIMIT = ClientRateLimitConfig(max_actions=3, window_ms=300_000, key="contact_form_submissions")

# Characters encodeURIComponent leaves unescaped besides -_.~
_URL_SAFE = "!*'()"


@dataclass(frozen=True)
class Variation:
    size: str
    color: str
    price: Optional[float] = None
    stock: int = 0


@dataclass(frozen=True)
class Product:
    name: str
    slug: str = ""


@dataclass(frozen=True)
class ContactSubmission:
    name: str
    email: str
    message: str
    phone: Optional[str] = None


@dataclass(frozen=True)
class LeadOutcome:
    allowed: bool
    url: Optional[str] = None
    notice: Optional[str] = None


def format_price(amount: Optional[float]) -> str:
    if amount is None:
        return "Consultar precio"
    return "$ " + f"{amount:,.0f}".replace(",", ".")


def whatsapp_url(message: str, number: Optional[str] = None) -> str:
    return f"https://wa.me/{number or settings.whatsapp_number}?text={quote(message, safe=_URL_SAFE)}"


def countdown_label(milliseconds: int) -> str:
    return f"Disponible en {math.ceil(milliseconds / 1000)}s"


def cooldown_notice(milliseconds: int) -> str:
    seconds = math.ceil(milliseconds / 1000)
    plural = "s" if seconds != 1 else ""
    return (
        "Por favor, esperá un momento antes de volver a consultar.\n"
        f"Disponible en {seconds} segundo{plural}."
    )


def build_product_message(product: Product, variation: Optional[Variation] = None, site_name: Optional[str] = None) -> str:
    message = f"Hola! Me interesa este producto de {site_name or settings.site_name}: {product.name}"
    if variation is None:
        return message + ". ¿Podrías darme más información?"

    message += f" - Tamaño: {variation.size}, Color: {variation.color}, Precio: {format_price(variation.price)}"
    if variation.stock == 0:
        return message + ". ¿Cuál es el tiempo de fabricación?"
    return message + ". ¿Está disponible para envío inmediato?"


def compose_contact_message(submission: ContactSubmission) -> str:
    lines = [
        f"Hola! Mi nombre es {submission.name}",
        "",
        f"Email: {submission.email}",
        f"Teléfono: {submission.phone}" if submission.phone else "",
        "",
        "Consulta: ",
        submission.message,
    ]
    return "\n".join(lines).strip()


class WhatsAppLeadButton:
    """Product page "consultar por WhatsApp" action.

    The local limiter decides immediately; the server check for
    ``whatsapp`` runs in the background and is not awaited by ``click``.
    """

    def __init__(
        self,
        product: Product,
        variation: Optional[Variation] = None,
        *,
        storage: Optional[DurableStorage] = None,
        server_check: ServerCheck = check_server_rate_limit,
        clock: Clock = now_ms,
        tick_seconds: Optional[float] = None,
    ) -> None:
        self.product = product
        self.variation = variation
        self._limiter = ClientRateLimiter(WHATSAPP_RATE_LIMIT, storage, clock=clock, tick_seconds=tick_seconds)
        self._server_check = server_check
        self._pending: set[asyncio.Task] = set()

    @property
    def limiter(self) -> ClientRateLimiter:
        return self._limiter

    @property
    def url(self) -> str:
        return whatsapp_url(build_product_message(self.product, self.variation))

    @property
    def pending_checks(self) -> tuple[asyncio.Task, ...]:
        return tuple(self._pending)

    def button_text(self) -> str:
        if self._limiter.is_rate_limited and self._limiter.time_until_reset > 0:
            return countdown_label(self._limiter.time_until_reset)
        return "Consultar por WhatsApp"

    def _denied(self) -> LeadOutcome:
        return LeadOutcome(allowed=False, notice=cooldown_notice(self._limiter.time_until_reset))

    async def click(self) -> LeadOutcome:
        if self._limiter.refresh().is_rate_limited:
            return self._denied()
        if not self._limiter.record_action():
            return self._denied()

        task = asyncio.get_running_loop().create_task(_server_gate(self._server_check, "whatsapp"))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return LeadOutcome(allowed=True, url=self.url)

    async def aclose(self) -> None:
        for task in list(self._pending):
            task.cancel()
        await asyncio.gather(*self._pending, return_exceptions=True)
        await self._limiter.aclose()


class ContactFormGate:
    """Contact form submission, delivered as a pre-filled WhatsApp message."""

    def __init__(
        self,
        *,
        storage: Optional[DurableStorage] = None,
        server_check: ServerCheck = check_server_rate_limit,
        clock: Clock = now_ms,
        tick_seconds: Optional[float] = None,
    ) -> None:
        self._limiter = ClientRateLimiter(CONTACT_RATE_LIMIT, storage, clock=clock, tick_seconds=tick_seconds)
        self._server_check = server_check

    @property
    def limiter(self) -> ClientRateLimiter:
        return self._limiter

    def button_text(self) -> str:
        if self._limiter.is_rate_limited and self._limiter.time_until_reset > 0:
            return countdown_label(self._limiter.time_until_reset)
        return "Enviar consulta"

    def _report_suspicious_fields(self, submission: ContactSubmission) -> None:
        for field_name in ("name", "email", "phone", "message"):
            value = getattr(submission, field_name) or ""
            if detect_suspicious_pattern(value):
                log_xss_attempt(field_name, value, "contact_form")

    async def submit(self, submission: ContactSubmission) -> LeadOutcome:
        self._report_suspicious_fields(submission)

        if self._limiter.refresh().is_rate_limited or not self._limiter.record_action():
            return LeadOutcome(allowed=False, notice=cooldown_notice(self._limiter.time_until_reset))

        result = await _server_gate(self._server_check, "contact")
        if not result.allowed:
            notice = cooldown_notice(result.reset_in) if result.reset_in else result.message
            return LeadOutcome(allowed=False, notice=notice)

        return LeadOutcome(allowed=True, url=whatsapp_url(compose_contact_message(submission)))

    async def aclose(self) -> None:
        await self._limiter.aclose()


async def _server_gate(server_check: ServerCheck, action: str) -> ServerCheckResult:
    try:
        result = await server_check(action)
    except Exception:
        logger.warning(
            "Server rate limit check raised, allowing action",
            exc_info=True,
            extra={"event": "server_rate_limit_check_failed", "action": action},
        )
        return ServerCheckResult(allowed=True)

    if not result.allowed:
        logger.info(
            "Server rate limit denied lead action",
            extra={"event": "server_rate_limit_denied", "action": action, "reason": result.message},
        )
    return result
