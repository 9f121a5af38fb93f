import io
import json
import sys
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest
import pytest_asyncio

ROOT = Path(__file__).resolve().parents[1]

if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from protection_billing.billing.processor import PaymentProcessorError, ProcessorInvoice  # noqa: E402
from protection_billing.common.db import dispose_engine, get_engine, session_scope  # noqa: E402
from protection_billing.common.fx import FxQuote, FxRateError  # noqa: E402
from protection_billing.common.json_logger import JsonLogger  # noqa: E402
from protection_billing.common.models import Base  # noqa: E402
from protection_billing.config import Config  # noqa: E402


@pytest_asyncio.fixture
async def database_url(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}"
    engine = get_engine(url)
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    yield url
    await dispose_engine(url)


@pytest.fixture
def log_stream():
    return io.StringIO()


@pytest.fixture
def logger(log_stream):
    json_logger = JsonLogger(run_id="test-run", stream=log_stream, log_file_path=None)
    yield json_logger
    json_logger.close()


@pytest.fixture
def app_config(database_url):
    return Config.from_env(
        {
            "DATABASE_URL": database_url,
            "STRIPE_SECRET_KEY": "sk_test_123",
            "SYNC_STORE_DELAY_SECONDS": "0",
        }
    )


@pytest.fixture
def read_events(log_stream):
    def _read() -> list[dict]:
        return [json.loads(line) for line in log_stream.getvalue().splitlines() if line.strip()]

    return _read


@pytest.fixture
def seed(database_url):
    async def _seed(*rows) -> None:
        async with session_scope(database_url) as session:
            async with session.begin():
                session.add_all(rows)

    return _seed


class FakeFx:
    def __init__(self, rates: dict[str, str] | None = None, *, fail_for: set[str] | None = None):
        self.rates = {code: Decimal(value) for code, value in (rates or {}).items()}
        self.fail_for = fail_for or set()
        self.calls: list[str] = []

    async def get_rate(self, currency: str) -> FxQuote:
        self.calls.append(currency)
        if currency in self.fail_for or currency not in self.rates:
            raise FxRateError(currency, "rate unavailable")
        return FxQuote(rate=self.rates[currency], as_of=datetime(2025, 1, 1, tzinfo=timezone.utc))


class FakeProcessor:
    """In-memory payment processor recording every call in order."""

    def __init__(self):
        self.calls: list[tuple] = []
        self.payment_method: str | None = "pm_card_visa"
        self.amount_due_override: int | None = None
        self.pay_error: PaymentProcessorError | None = None
        self.fail_on: str | None = None
        self._amounts: dict[str, int] = {}
        self._counter = 0

    def _maybe_fail(self, step: str) -> None:
        if self.fail_on == step:
            raise PaymentProcessorError(f"{step} failed", status_code=500)

    async def find_default_payment_method(self, customer_id):
        self.calls.append(("find_default_payment_method", customer_id))
        return self.payment_method

    async def create_draft_invoice(self, *, customer_id, description, metadata, default_payment_method, idempotency_key):
        self.calls.append(("create_draft_invoice", dict(metadata), idempotency_key))
        self._maybe_fail("create")
        self._counter += 1
        invoice_id = f"in_test_{self._counter}"
        self._amounts[invoice_id] = 0
        return ProcessorInvoice(id=invoice_id, status="draft", amount_due=0)

    async def attach_invoice_item(self, *, customer_id, invoice_id, amount, description, idempotency_key, currency="usd"):
        self.calls.append(("attach_invoice_item", invoice_id, amount, description))
        self._maybe_fail("attach")
        self._amounts[invoice_id] += amount
        return f"ii_{invoice_id}"

    async def retrieve_invoice(self, invoice_id):
        self.calls.append(("retrieve_invoice", invoice_id))
        amount = self._amounts[invoice_id] if self.amount_due_override is None else self.amount_due_override
        return ProcessorInvoice(id=invoice_id, status="draft", amount_due=amount)

    async def finalize_invoice(self, invoice_id):
        self.calls.append(("finalize_invoice", invoice_id))
        self._maybe_fail("finalize")
        return ProcessorInvoice(
            id=invoice_id,
            status="open",
            amount_due=self._amounts[invoice_id],
            hosted_invoice_url=f"https://invoice.example/{invoice_id}",
        )

    async def pay_invoice(self, invoice_id, payment_method):
        self.calls.append(("pay_invoice", invoice_id, payment_method))
        if self.pay_error is not None:
            raise self.pay_error
        return ProcessorInvoice(
            id=invoice_id,
            status="paid",
            amount_due=self._amounts[invoice_id],
            hosted_invoice_url=f"https://invoice.example/{invoice_id}",
            paid=True,
            paid_at=datetime(2025, 4, 14, 9, 0, tzinfo=timezone.utc),
        )

    def call_names(self) -> list[str]:
        return [call[0] for call in self.calls]


@pytest.fixture
def fake_fx():
    return FakeFx({"EUR": "1.0850", "JPY": "0.0067"})


@pytest.fixture
def fake_processor():
    return FakeProcessor()
