"""
tenant_config.py - Tenant strategy table.

Each tenant maps to one ValidatorConfig, resolved once when a session starts
and passed into the orchestrator as plain data. Nothing downstream branches
on tenant ids.

The CRM side is only enabled when one of the tenant's API-key environment
variables is set (a local .env is loaded on import); otherwise the deal
fetch step is skipped, not failed.
"""

from __future__ import annotations

import os
from typing import Any, Mapping, Optional

from dotenv import load_dotenv

from logging_config import get_logger
from models import Deal, ValidatorConfig

logger = get_logger(__name__)

try:
    load_dotenv()
except UnicodeDecodeError:
    # Legacy Windows-encoded .env files.
    load_dotenv(encoding="cp1252")

WIP_PIPELINES = [3, 4, 5, 6, 7, 8, 9, 16]

TENANT_STRATEGIES: dict[str, dict[str, Any]] = {
    "6dd39ea4-e6a6-4993-a37a-21482ccf8d22": {
        "tenant_name": "Tenant 1",
        "api_key_env": ("PIPEDRIVE_KEY_TENANT1", "PIPEDRIVE_KEY"),
        "quote_pipeline_ids": [2],
        "invoice_stage_id": 6,
        "project_pipeline_ids": [2],
        "pipeline_names": {2: "Work In Progress"},
        "custom_field_keys": {
            "quote_id": "0e9dc89b14fb67546540fd3e11a7fe06653d708f",
            "invoice_id": "c599cab3902b6c84c1f9e2689f308a4369fffe7d",
            "quote_number": "a0b59ccf244af998aa57a01f22e2ffd41cf504f9",
            "vessel_name": "bef5a8a5866aec2d7f4db2a5d8964ab04a4dc93d",
        },
    },
    "ea67107e-c352-40a9-a8b8-24d81ae3fc85": {
        "tenant_name": "Tenant 2 (BSENI)",
        "api_key_env": ("PIPEDRIVE_KEY_TENANT2", "PIPEDRIVE_KEY_2"),
        "quote_pipeline_ids": WIP_PIPELINES,
        "invoice_pipeline_ids": [3],
        "project_pipeline_ids": WIP_PIPELINES,
        "pipeline_names": {
            3: "WIP - Engine Recon",
            4: "WIP - Machine Shop",
            5: "WIP - Laser Cladding",
            6: "WIP - Afloat Repairs",
            7: "WIP - Engine Overhauling",
            8: "WIP - Electricals",
            9: "WIP - Mechanical",
            16: "WIP - Navy",
        },
        "custom_field_keys": {
            "quote_id": "1f21104ccb95f5a4773ef52cd0c2cc1c78203f69",
            "invoice_id": "8c5c696440f023067a49103a15b60ff6ae6e3243",
            "quote_number": "a52165a056d57cabba309ec5e53d7a6cd47ea766",
            "vessel_name": "ecb34e26525067dd1a426c0c59909a8797a85e54",
        },
    },
}


def _env_flag(env: Mapping[str, str], name: str) -> Optional[bool]:
    raw = str(env.get(name, "")).strip().lower()
    if not raw:
        return None
    return raw in {"1", "true", "yes", "on"}


def resolve_validator_config(
    tenant_id: Optional[str],
    env: Optional[Mapping[str, str]] = None,
    check_credentials: bool = True,
) -> ValidatorConfig:
    """Build the ValidatorConfig for a tenant.

    Unknown tenants get the permissive default (every pipeline in scope).
    With check_credentials=False the CRM stays enabled regardless of keys,
    which is what callers supplying their own records want.
    """
    env = os.environ if env is None else env
    tenant = str(tenant_id or "").strip() or "default"
    strategy = TENANT_STRATEGIES.get(tenant)

    halt = _env_flag(env, "RECON_HALT_ON_FETCH_ERROR")
    overrides: dict[str, Any] = {}
    if halt is not None:
        overrides["halt_on_fetch_error"] = halt

    if strategy is None:
        logger.info("tenant_config | tenant=%s | strategy=default", tenant)
        return ValidatorConfig(tenant_id=tenant, **overrides)

    settings = {key: value for key, value in strategy.items() if key != "api_key_env"}
    has_key = any(str(env.get(name, "")).strip() for name in strategy.get("api_key_env", ()))
    crm_enabled = has_key or not check_credentials
    if not crm_enabled:
        logger.warning(
            "tenant_config | tenant=%s | crm_enabled=False | reason='no API key in %s'",
            tenant,
            "/".join(strategy.get("api_key_env", ())),
        )

    return ValidatorConfig(tenant_id=tenant, crm_enabled=crm_enabled, **settings, **overrides)


def deal_from_crm(raw: Mapping[str, Any], config: ValidatorConfig) -> Deal:
    """Map a raw CRM deal payload (custom fields keyed by hash) onto a Deal."""
    custom = raw.get("custom_fields") or {}
    keys = config.custom_field_keys

    def custom_value(name: str) -> Any:
        field_key = keys.get(name)
        if not field_key:
            return None
        value = custom.get(field_key, raw.get(field_key))
        if isinstance(value, Mapping):
            value = value.get("value")
        return value

    org = raw.get("org_name")
    if org is None and isinstance(raw.get("org_id"), Mapping):
        org = raw["org_id"].get("name")

    return Deal(
        id=raw.get("id"),
        title=raw.get("title"),
        value=raw.get("value"),
        currency=raw.get("currency"),
        status=raw.get("status") or "won",
        pipeline_id=raw.get("pipeline_id"),
        stage_id=raw.get("stage_id"),
        org_name=org,
        quote_id=raw.get("quote_id") or custom_value("quote_id"),
        invoice_id=raw.get("invoice_id") or custom_value("invoice_id"),
        won_time=raw.get("won_time"),
    )
