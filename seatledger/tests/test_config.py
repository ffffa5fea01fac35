from __future__ import annotations

import pytest

from seatledger.config import BillingConfig, load_billing_config, load_email_config


def test_defaults_from_empty_environment() -> None:
    config = load_billing_config({})

    assert config == BillingConfig()
    assert config.store == "postgres"
    assert config.grace_period_days == 7
    assert config.signature_header == "Payment-Signature"
    assert config.email.provider_name == "dev"
    assert config.price_ids == {}
    assert config.db_connect_kwargs["dbname"] == "seatledger"


def test_environment_overrides() -> None:
    config = load_billing_config(
        {
            "BILLING_STORE": "Memory",
            "BILLING_GRACE_PERIOD_DAYS": "3",
            "PAYMENTS_WEBHOOK_SECRET": "whsec_live",
            "APP_BASE_URL": "https://billing.example.com/",
            "BILLING_SWEEP_ENABLED": "off",
            "BILLING_SWEEP_INTERVAL_SECONDS": "45",
            "PAYMENTS_TEAM_MONTHLY_PLAN_ID": "price_team",
            "PAYMENTS_EXECUTIVE_YEARLY_PLAN_ID": " price_exec_year ",
            "EMAIL_PROVIDER": "SMTP",
            "SMTP_USE_TLS": "false",
            "SMTP_PORT": "2525",
            "LOG_LEVEL": "debug",
        }
    )

    assert config.store == "memory"
    assert config.grace_period_days == 3
    assert config.webhook_secret == "whsec_live"
    assert config.app_base_url == "https://billing.example.com"
    assert config.sweep_enabled is False
    assert config.sweep_interval_seconds == 45.0
    assert config.price_ids == {"team_monthly": "price_team", "executive_yearly": "price_exec_year"}
    assert config.email.provider_name == "smtp"
    assert config.email.smtp_use_tls is False
    assert config.email.smtp_port == 2525
    assert config.log_level == "DEBUG"


def test_zero_grace_period_is_allowed() -> None:
    assert load_billing_config({"BILLING_GRACE_PERIOD_DAYS": "0"}).grace_period_days == 0


@pytest.mark.parametrize(
    "env,variable",
    [
        ({"BILLING_STORE": "mongo"}, "BILLING_STORE"),
        ({"BILLING_GRACE_PERIOD_DAYS": "-1"}, "BILLING_GRACE_PERIOD_DAYS"),
        ({"BILLING_GRACE_PERIOD_DAYS": "a week"}, "BILLING_GRACE_PERIOD_DAYS"),
        ({"BILLING_SWEEP_ENABLED": "maybe"}, "BILLING_SWEEP_ENABLED"),
        ({"DB_POOL_MIN": "5", "DB_POOL_MAX": "2"}, "DB_POOL_MAX"),
        ({"SMTP_PORT": "0"}, "SMTP_PORT"),
    ],
)
def test_invalid_values_name_the_variable(env, variable) -> None:
    with pytest.raises(ValueError, match=variable):
        load_billing_config(env)


def test_email_config_ignores_blank_credentials() -> None:
    config = load_email_config({"SMTP_USER": "", "SMTP_PASS": ""})

    assert config.smtp_username is None
    assert config.smtp_password is None
