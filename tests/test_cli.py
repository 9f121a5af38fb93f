import json

import pytest

from protection_billing import cli
from protection_billing.config import ConfigError
from protection_billing.sync import batch
from protection_billing.sync.batch import BatchResult
from protection_billing.sync.store_sync import StoreSyncResult


def test_sync_command_prints_batch_and_reports_failures(monkeypatch, capsys):
    captured = {}

    async def fake_sync_now(**kwargs):
        captured.update(kwargs)
        return BatchResult(
            store_results=[
                StoreSyncResult(store_id="a", shop_domain="a.myshopify.com", new_sales_inserted=1),
                StoreSyncResult(store_id="b", shop_domain="b.myshopify.com", error="Shopify API error: 503"),
            ]
        )

    monkeypatch.setattr(batch, "sync_now", fake_sync_now)

    exit_code = cli.main(["sync", "--days-back", "3", "--mode", "concurrent"])

    payload = json.loads(capsys.readouterr().out)
    assert exit_code == 1
    assert captured["days_back"] == 3
    assert captured["mode"] == "concurrent"
    assert payload["successful_syncs"] == 1
    assert payload["failed_syncs"] == 1


def test_sync_command_requires_both_dates():
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["sync", "--start-date", "2025-04-01"])

    assert excinfo.value.code == 2


def test_supplemental_command_validates_week():
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["invoices", "supplemental", "--store-id", "a", "--week", "2025-15"])

    assert excinfo.value.code == 2


def test_config_errors_exit_with_code_two(monkeypatch, capsys):
    from protection_billing.billing import weekly

    async def broken(**kwargs):
        raise ConfigError("Missing required environment variable: DATABASE_URL")

    monkeypatch.setattr(weekly, "generate_weekly_invoices", broken)

    assert cli.main(["invoices", "weekly", "--test-mode"]) == 2
    assert "DATABASE_URL" in json.loads(capsys.readouterr().out)["error"]


def _webhook_config(secret: str = ""):
    from protection_billing.config import Config

    return Config.from_env(
        {
            "DATABASE_URL": "sqlite+aiosqlite:///unused.db",
            "STRIPE_SECRET_KEY": "sk_test_123",
            "STRIPE_WEBHOOK_SECRET": secret,
        }
    )


def test_webhook_command_applies_event(monkeypatch, capsys, tmp_path):
    from protection_billing.billing import webhooks

    applied = []

    async def fake_apply(database_url, event, *, logger):
        applied.append((database_url, event["type"]))
        return True

    monkeypatch.setattr(cli, "get_config", lambda: _webhook_config())
    monkeypatch.setattr(webhooks, "apply_invoice_event", fake_apply)
    payload_file = tmp_path / "event.json"
    payload_file.write_text(json.dumps({"type": "invoice.paid", "data": {"object": {"id": "in_1"}}}))

    exit_code = cli.main(["invoices", "webhook", "--payload-file", str(payload_file)])

    payload = json.loads(capsys.readouterr().out)
    assert exit_code == 0
    assert payload == {"success": True, "updated": True, "event_type": "invoice.paid"}
    assert applied == [("sqlite+aiosqlite:///unused.db", "invoice.paid")]


def test_webhook_command_rejects_bad_signature(monkeypatch, capsys, tmp_path):
    from protection_billing.billing import webhooks

    async def fail_apply(*args, **kwargs):
        raise AssertionError("event must not be applied")

    monkeypatch.setattr(cli, "get_config", lambda: _webhook_config("whsec_test"))
    monkeypatch.setattr(webhooks, "apply_invoice_event", fail_apply)
    payload_file = tmp_path / "event.json"
    payload_file.write_text('{"type": "invoice.paid"}')

    exit_code = cli.main(
        ["invoices", "webhook", "--payload-file", str(payload_file), "--signature", "t=1,v1=deadbeef"]
    )

    assert exit_code == 2
    assert json.loads(capsys.readouterr().out)["success"] is False


def test_sync_command_rejects_reversed_window(monkeypatch, capsys):
    from protection_billing.config import Config

    config = Config.from_env({"DATABASE_URL": "sqlite+aiosqlite:///unused.db", "STRIPE_SECRET_KEY": "sk_test_123"})
    monkeypatch.setattr(batch, "get_config", lambda: config)

    exit_code = cli.main(["sync", "--start-date", "2025-05-01", "--end-date", "2025-04-01"])

    payload = json.loads(capsys.readouterr().out)
    assert exit_code == 2
    assert payload["success"] is False
    assert "after end" in payload["error"]


def test_stores_validate_command_exit_codes(monkeypatch, capsys):
    results = {
        "good": {"store_id": "good", "shop_domain": "good.myshopify.com", "valid": True, "shop": {"id": 1}},
        "revoked": {"store_id": "revoked", "shop_domain": "r.myshopify.com", "valid": False, "status_code": 401},
    }

    async def fake_validate_store(*, store_id):
        if store_id not in results:
            raise LookupError(f"Store {store_id} not found")
        return results[store_id]

    monkeypatch.setattr(batch, "validate_store", fake_validate_store)

    assert cli.main(["stores", "validate", "--store-id", "good"]) == 0
    assert json.loads(capsys.readouterr().out)["success"] is True
    assert cli.main(["stores", "validate", "--store-id", "revoked"]) == 1
    assert json.loads(capsys.readouterr().out)["status_code"] == 401
    assert cli.main(["stores", "validate", "--store-id", "missing"]) == 2
    assert "not found" in json.loads(capsys.readouterr().out)["error"]
