from unittest.mock import patch

from conftest import make_settings
from parcelbook_client import monitoring


def test_init_sentry_without_dsn_is_disabled(monkeypatch):
    monkeypatch.setattr(monitoring, "_sentry_enabled", False)
    with patch("parcelbook_client.monitoring.sentry_sdk.init") as init:
        assert monitoring.init_sentry(make_settings()) is False
    init.assert_not_called()
    assert monitoring.is_sentry_enabled() is False


def test_init_sentry_with_dsn(monkeypatch):
    monkeypatch.setattr(monitoring, "_sentry_enabled", False)
    settings = make_settings(sentry_dsn="https://key@o0.ingest.sentry.io/1", environment="staging")
    with patch("parcelbook_client.monitoring.sentry_sdk.init") as init:
        assert monitoring.init_sentry(settings) is True
    kwargs = init.call_args.kwargs
    assert kwargs["environment"] == "staging"
    assert kwargs["send_default_pii"] is False
    assert monitoring.is_sentry_enabled() is True


def test_payment_breadcrumbs_only_when_enabled(monkeypatch):
    monkeypatch.setattr(monitoring, "_sentry_enabled", False)
    with patch("parcelbook_client.monitoring.sentry_sdk.add_breadcrumb") as crumb:
        monitoring.record_payment_event("payment_initiated", data={"transaction_id": "tx-1"})
        crumb.assert_not_called()

        monkeypatch.setattr(monitoring, "_sentry_enabled", True)
        monitoring.record_payment_event("payment_initiated", data={"transaction_id": "tx-1"})
    crumb.assert_called_once_with(
        category="payment",
        message="payment_initiated",
        level="info",
        data={"transaction_id": "tx-1"},
    )
