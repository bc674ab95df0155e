"""
test_tenant_config.py - Tenant strategy table and raw CRM deal mapping.

Usage:
    pytest test_tenant_config.py
"""

from __future__ import annotations

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from tenant_config import TENANT_STRATEGIES, deal_from_crm, resolve_validator_config

TENANT_ONE = "6dd39ea4-e6a6-4993-a37a-21482ccf8d22"
TENANT_TWO = "ea67107e-c352-40a9-a8b8-24d81ae3fc85"


def test_known_tenant_needs_api_key():
    disabled = resolve_validator_config(TENANT_ONE, env={})
    assert disabled.crm_enabled is False
    assert disabled.tenant_name == "Tenant 1"
    assert disabled.quote_pipeline_ids == [2]
    assert disabled.invoice_stage_id == 6

    enabled = resolve_validator_config(TENANT_ONE, env={"PIPEDRIVE_KEY": "secret"})
    assert enabled.crm_enabled is True


def test_second_tenant_scopes_and_pipeline_names():
    config = resolve_validator_config(TENANT_TWO, env={"PIPEDRIVE_KEY_2": "secret"})

    assert config.crm_enabled is True
    assert config.quote_pipeline_ids == [3, 4, 5, 6, 7, 8, 9, 16]
    assert config.invoice_pipeline_ids == [3]
    assert config.pipeline_name(16) == "WIP - Navy"
    assert config.pipeline_name(99) == "Pipeline 99"
    assert config.pipeline_name(None) == "No pipeline"


def test_credentials_check_can_be_skipped():
    config = resolve_validator_config(TENANT_TWO, env={}, check_credentials=False)
    assert config.crm_enabled is True


def test_unknown_tenant_gets_default_config():
    config = resolve_validator_config("someone-else", env={})
    assert config.tenant_id == "someone-else"
    assert config.crm_enabled is True
    assert config.quote_pipeline_ids is None

    assert resolve_validator_config(None, env={}).tenant_id == "default"


def test_halt_flag_from_env():
    config = resolve_validator_config(TENANT_ONE, env={"PIPEDRIVE_KEY": "k", "RECON_HALT_ON_FETCH_ERROR": "true"})
    assert config.halt_on_fetch_error is True
    assert resolve_validator_config("x", env={"RECON_HALT_ON_FETCH_ERROR": "0"}).halt_on_fetch_error is False


def test_strategy_table_is_not_mutated_by_resolution():
    before = dict(TENANT_STRATEGIES[TENANT_ONE])
    resolve_validator_config(TENANT_ONE, env={})
    assert TENANT_STRATEGIES[TENANT_ONE] == before


def test_deal_from_crm_reads_tenant_custom_fields():
    config = resolve_validator_config(TENANT_ONE, env={"PIPEDRIVE_KEY": "k"})
    quote_key = config.custom_field_keys["quote_id"]
    invoice_key = config.custom_field_keys["invoice_id"]
    raw = {
        "id": 1042,
        "title": "ED25001 - MV Ocean Star",
        "value": "12,500.00",
        "currency": "sgd",
        "status": "won",
        "pipeline_id": 2,
        "stage_id": 6,
        "org_id": {"name": "Ocean Shipping"},
        "won_time": "2024-05-01 08:00:00",
        "custom_fields": {quote_key: "Q-1", invoice_key: {"value": "I-1"}},
    }

    deal = deal_from_crm(raw, config)

    assert deal.id == "1042"
    assert deal.value == 12500.0
    assert deal.currency == "SGD"
    assert deal.org_name == "Ocean Shipping"
    assert deal.quote_id == "Q-1"
    assert deal.invoice_id == "I-1"
    assert deal.won_time == "2024-05-01"
