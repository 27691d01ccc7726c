import asyncio

import pytest

from muma_api.client.leads import (
    ContactFormGate,
    ContactSubmission,
    Product,
    Variation,
    WhatsAppLeadButton,
    build_product_message,
    compose_contact_message,
    cooldown_notice,
    format_price,
    whatsapp_url,
)
from muma_api.client.server_check import ServerCheckResult
from muma_api.client.storage import MemoryStorage


class FakeClock:
    def __init__(self, now: int = 0) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


class RecordingServerCheck:
    def __init__(self, result: ServerCheckResult = ServerCheckResult(allowed=True)) -> None:
        self.result = result
        self.calls = []

    async def __call__(self, action: str) -> ServerCheckResult:
        self.calls.append(action)
        return self.result


async def _exploding_check(action: str) -> ServerCheckResult:
    raise RuntimeError("network stack crashed")


@pytest.fixture()
def clock():
    return FakeClock(now=1_700_000_000_000)


def _submission(**overrides):
    data = {"name": "Ana", "email": "ana@example.com", "message": "Quisiera un presupuesto"}
    data.update(overrides)
    return ContactSubmission(**data)


def test_format_price_uses_dot_thousands():
    assert format_price(12500) == "$ 12.500"
    assert format_price(1_234_567.4) == "$ 1.234.567"
    assert format_price(None) == "Consultar precio"


def test_whatsapp_url_encodes_like_a_browser():
    assert whatsapp_url("Hola! ¿Qué tal?", number="5491100000000") == (
        "https://wa.me/5491100000000?text=Hola!%20%C2%BFQu%C3%A9%20tal%3F"
    )


def test_product_message_variants():
    product = Product(name="Mantel Floral")

    assert build_product_message(product, site_name="Fira Estudio") == (
        "Hola! Me interesa este producto de Fira Estudio: Mantel Floral. ¿Podrías darme más información?"
    )
    made_to_order = Variation(size="150x200", color="Beige", price=12500, stock=0)
    assert build_product_message(product, made_to_order, site_name="Fira Estudio") == (
        "Hola! Me interesa este producto de Fira Estudio: Mantel Floral - Tamaño: 150x200, "
        "Color: Beige, Precio: $ 12.500. ¿Cuál es el tiempo de fabricación?"
    )
    in_stock = Variation(size="150x200", color="Beige", price=12500, stock=4)
    assert build_product_message(product, in_stock, site_name="Fira Estudio").endswith(
        "¿Está disponible para envío inmediato?"
    )


def test_compose_contact_message():
    assert compose_contact_message(_submission(phone="11 5555 0000")) == (
        "Hola! Mi nombre es Ana\n\nEmail: ana@example.com\nTeléfono: 11 5555 0000\n\nConsulta: \nQuisiera un presupuesto"
    )


def test_cooldown_notice_pluralises():
    assert cooldown_notice(1_000).endswith("Disponible en 1 segundo.")
    assert cooldown_notice(42_001).endswith("Disponible en 43 segundos.")


def test_whatsapp_button_allows_five_clicks_then_counts_down(clock):
    server_check = RecordingServerCheck()

    async def scenario() -> None:
        button = WhatsAppLeadButton(
            Product(name="Mantel Floral"),
            storage=MemoryStorage(),
            server_check=server_check,
            clock=clock,
            tick_seconds=0.01,
        )
        assert button.button_text() == "Consultar por WhatsApp"

        outcomes = [await button.click() for _ in range(5)]
        assert all(outcome.allowed for outcome in outcomes)
        assert outcomes[0].url.startswith("https://wa.me/")

        denied = await button.click()
        assert denied.allowed is False
        assert denied.url is None
        assert denied.notice.endswith("Disponible en 60 segundos.")
        assert button.button_text() == "Disponible en 60s"

        await asyncio.gather(*button.pending_checks)
        await button.aclose()

    asyncio.run(scenario())
    assert server_check.calls == ["whatsapp"] * 5


def test_whatsapp_button_survives_failing_server_check(clock):
    async def scenario() -> None:
        button = WhatsAppLeadButton(Product(name="Camino"), storage=MemoryStorage(), server_check=_exploding_check, clock=clock)
        outcome = await button.click()
        assert outcome.allowed is True
        await asyncio.gather(*button.pending_checks)
        await button.aclose()

    asyncio.run(scenario())


def test_contact_form_limits_to_three_submissions(clock):
    server_check = RecordingServerCheck()

    async def scenario() -> None:
        gate = ContactFormGate(storage=MemoryStorage(), server_check=server_check, clock=clock, tick_seconds=0.01)
        for _ in range(3):
            outcome = await gate.submit(_submission())
            assert outcome.allowed is True
            assert "Consulta%3A" in outcome.url

        denied = await gate.submit(_submission())
        assert denied.allowed is False
        assert denied.notice.endswith("Disponible en 300 segundos.")
        assert gate.button_text() == "Disponible en 300s"
        await gate.aclose()

    asyncio.run(scenario())
    assert server_check.calls == ["contact"] * 3


def test_contact_form_reports_server_denial(clock):
    async def scenario() -> None:
        with_reset = ContactFormGate(
            storage=MemoryStorage(),
            server_check=RecordingServerCheck(ServerCheckResult(allowed=False, reset_in=42_000, message="slow down")),
            clock=clock,
        )
        outcome = await with_reset.submit(_submission())
        assert outcome.allowed is False
        assert outcome.notice.endswith("Disponible en 42 segundos.")

        without_reset = ContactFormGate(
            storage=MemoryStorage(),
            server_check=RecordingServerCheck(ServerCheckResult(allowed=False, message="slow down")),
            clock=clock,
        )
        assert (await without_reset.submit(_submission())).notice == "slow down"

        await with_reset.aclose()
        await without_reset.aclose()

    asyncio.run(scenario())


def test_contact_form_allows_when_server_check_raises(clock):
    async def scenario() -> None:
        gate = ContactFormGate(storage=MemoryStorage(), server_check=_exploding_check, clock=clock)
        assert (await gate.submit(_submission())).allowed is True
        await gate.aclose()

    asyncio.run(scenario())


def test_contact_form_logs_suspicious_input(clock, caplog):
    async def scenario() -> None:
        gate = ContactFormGate(storage=MemoryStorage(), server_check=RecordingServerCheck(), clock=clock)
        await gate.submit(_submission(message="<script>alert(1)</script>"))
        await gate.aclose()

    asyncio.run(scenario())

    attempts = [record.security for record in caplog.records if getattr(record, "event", None) == "xss_attempt"]
    assert len(attempts) == 1
    assert attempts[0]["field"] == "message"
    assert attempts[0]["context"] == "contact_form"
    assert attempts[0]["severity"] == "high"
