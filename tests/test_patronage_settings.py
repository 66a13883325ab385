from __future__ import annotations

import asyncio
import logging
from decimal import Decimal

import pytest

from services.patronage import PatronageSettings, load_patronage_settings
from services.patronage.sandbox_store import SandboxStore

_ENV_KEYS = (
    "PATRONAGE_PRODUCT_IDS",
    "PATRONAGE_PRODUCT_DURATIONS",
    "PATRONAGE_APP_ID",
    "PATRONAGE_LOOKUP_URL",
    "PATRONAGE_LOOKUP_TIMEOUT",
    "PATRONAGE_RECENT_WINDOW_MONTHS",
    "PATRONAGE_PURCHASE_WAIT_SECONDS",
    "PATRONAGE_USER_ID",
    "PATRONAGE_DATABASE_URL",
    "PATRONAGE_SANDBOX_PRODUCTS",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults_without_environment() -> None:
    settings = load_patronage_settings()

    assert settings.product_identifiers == ()
    assert settings.app_id is None
    assert settings.lookup_url == "https://itunes.apple.com/lookup"
    assert settings.recent_window_months == 1
    assert settings.database_url == "sqlite:///patronage.db"


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PATRONAGE_PRODUCT_IDS", "com.app.patronage.1, com.app.patronage.12,com.app.patronage.1")
    monkeypatch.setenv("PATRONAGE_PRODUCT_DURATIONS", "com.app.patronage.yearly=12,broken,com.app.x=abc,com.app.y=0")
    monkeypatch.setenv("PATRONAGE_APP_ID", " 284882215 ")
    monkeypatch.setenv("PATRONAGE_RECENT_WINDOW_MONTHS", "3")
    monkeypatch.setenv("PATRONAGE_PURCHASE_WAIT_SECONDS", "2.5")
    monkeypatch.setenv("PATRONAGE_LOOKUP_TIMEOUT", "not-a-number")

    settings = load_patronage_settings()

    assert settings.product_identifiers == ("com.app.patronage.1", "com.app.patronage.12")
    assert settings.product_durations == {"com.app.patronage.yearly": 12}
    assert settings.app_id == "284882215"
    assert settings.recent_window_months == 3
    assert settings.purchase_wait_seconds == 2.5
    assert settings.lookup_timeout == 10.0


def test_settings_are_cached(monkeypatch: pytest.MonkeyPatch) -> None:
    first = load_patronage_settings()
    monkeypatch.setenv("PATRONAGE_APP_ID", "later")

    assert load_patronage_settings() is first


def test_sandbox_products_double_as_identifiers(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PATRONAGE_SANDBOX_PRODUCTS", "com.app.patronage.1=0.99,com.app.patronage.3=2.99,bad=x")

    settings = load_patronage_settings()
    store = SandboxStore.from_settings(settings)

    assert settings.product_identifiers == ("com.app.patronage.1", "com.app.patronage.3")
    assert settings.sandbox_products == {
        "com.app.patronage.1": Decimal("0.99"),
        "com.app.patronage.3": Decimal("2.99"),
    }
    assert store.can_make_payments()
    products = asyncio.run(store.list_products(settings.product_identifiers))
    assert [product.title for product in products] == ["1 Month Patronage", "3 Months Patronage"]


def test_unresolved_products_are_reported(monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture) -> None:
    monkeypatch.setenv("PATRONAGE_PRODUCT_IDS", "com.app.patronage.1,com.app.patronage.lifetime")

    with caplog.at_level(logging.WARNING, logger="services.patronage.settings"):
        settings = load_patronage_settings()

    assert settings.unresolved_products() == ["com.app.patronage.lifetime"]
    assert "com.app.patronage.lifetime" in caplog.text


def test_duration_for_prefers_explicit_mapping() -> None:
    settings = PatronageSettings(product_durations={"com.app.patronage.1": 6})

    assert settings.duration_for("com.app.patronage.1") == 6
    assert settings.duration_for("com.app.patronage.3") == 3
    assert settings.duration_for("com.app.patronage.gold") is None
