"""Configuration for the marketplace dispute engine.

All settings are driven by environment variables with sensible defaults.
Policy values (windows, minimum lengths, evidence caps, reputation deltas)
live here so product can tune them without touching the state machine.
"""

from __future__ import annotations

import os
from decimal import Decimal


def _get_int(name: str, default: int) -> int:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return int(val)


def _get_float(name: str, default: float) -> float:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return float(val)


def _get_bool(name: str, default: bool) -> bool:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return val.strip().lower() in {"1", "true", "yes", "y", "on"}


def _get_decimal(name: str, default: str) -> Decimal:
    val = os.getenv(name)
    if val is None or val == "":
        return Decimal(default)
    return Decimal(val)


def _get_list(name: str, default: str) -> tuple[str, ...]:
    val = os.getenv(name)
    if val is None or val == "":
        val = default
    return tuple(item.strip().lower() for item in val.split(",") if item.strip())


class DisputeSettings:
    # --- Deadlines ---
    # Seller must respond within this many days of the dispute being opened.
    response_window_days: float = _get_float("DISPUTES_RESPONSE_WINDOW_DAYS", 7.0)
    # Parties must agree within this many days of the seller's response.
    negotiation_window_days: float = _get_float("DISPUTES_NEGOTIATION_WINDOW_DAYS", 7.0)
    # Resolved disputes without an outstanding refund are archived after this.
    close_grace_hours: float = _get_float("DISPUTES_CLOSE_GRACE_HOURS", 72.0)
    # Seller listing flags disputes with this many days (or fewer) left to respond.
    urgent_threshold_days: float = _get_float("DISPUTES_URGENT_THRESHOLD_DAYS", 3.0)

    # --- Input validation ---
    max_title_length: int = _get_int("DISPUTES_MAX_TITLE_LENGTH", 100)
    min_description_length: int = _get_int("DISPUTES_MIN_DESCRIPTION_LENGTH", 20)
    max_description_length: int = _get_int("DISPUTES_MAX_DESCRIPTION_LENGTH", 1000)
    min_response_length: int = _get_int("DISPUTES_MIN_RESPONSE_LENGTH", 20)
    min_reasoning_length: int = _get_int("DISPUTES_MIN_REASONING_LENGTH", 30)
    max_message_length: int = _get_int("DISPUTES_MAX_MESSAGE_LENGTH", 2000)

    # --- Evidence ---
    max_buyer_evidence: int = _get_int("DISPUTES_MAX_BUYER_EVIDENCE", 5)
    max_seller_evidence: int = _get_int("DISPUTES_MAX_SELLER_EVIDENCE", 3)
    max_evidence_bytes: int = _get_int("DISPUTES_MAX_EVIDENCE_BYTES", 10 * 1024 * 1024)
    evidence_media_types: tuple[str, ...] = _get_list(
        "DISPUTES_EVIDENCE_MEDIA_TYPES", "image/*,video/*,application/pdf"
    )

    # --- Reputation policy ---
    initial_score: Decimal = _get_decimal("DISPUTES_INITIAL_SCORE", "100")
    open_penalty: Decimal = _get_decimal("DISPUTES_OPEN_PENALTY", "-5")
    fault_penalty: Decimal = _get_decimal("DISPUTES_FAULT_PENALTY", "-15")
    vindication_reward: Decimal = _get_decimal("DISPUTES_VINDICATION_REWARD", "5")

    # --- Disbursement ---
    currency: str = os.getenv("DISPUTES_CURRENCY", "KES")
    max_payout_identifier_length: int = _get_int("DISPUTES_MAX_PAYOUT_ID_LENGTH", 64)
    # Failed refunds are retried automatically until this many attempts exist.
    disbursement_max_attempts: int = _get_int("DISPUTES_DISBURSEMENT_MAX_ATTEMPTS", 3)
    # Unreachable gateway: dispatch retried with exponential backoff.
    dispatch_backoff_base_seconds: float = _get_float("DISPUTES_DISPATCH_BACKOFF_BASE", 30.0)
    dispatch_backoff_max_seconds: float = _get_float("DISPUTES_DISPATCH_BACKOFF_MAX", 900.0)
    dispatch_max_attempts: int = _get_int("DISPUTES_DISPATCH_MAX_ATTEMPTS", 5)
    gateway_url: str = os.getenv("DISPUTES_GATEWAY_URL", "")
    gateway_api_key: str = os.getenv("DISPUTES_GATEWAY_API_KEY", "")
    # HMAC secret the gateway signs settlement callbacks with.
    callback_secret: str = os.getenv("DISPUTES_CALLBACK_SECRET", "")
    # No downstream call made on behalf of a caller may block longer than this.
    downstream_timeout_seconds: float = _get_float("DISPUTES_DOWNSTREAM_TIMEOUT", 10.0)

    # --- Notifications ---
    notify_webhook_url: str = os.getenv("DISPUTES_NOTIFY_WEBHOOK_URL", "")
    notify_max_attempts: int = _get_int("DISPUTES_NOTIFY_MAX_ATTEMPTS", 5)

    # --- Scheduler ---
    sweep_interval_seconds: float = _get_float("DISPUTES_SWEEP_INTERVAL", 60.0)
    scheduler_enabled: bool = _get_bool("DISPUTES_SCHEDULER_ENABLED", True)

    # --- Listing ---
    default_page_size: int = _get_int("DISPUTES_PAGE_SIZE", 20)
    max_page_size: int = _get_int("DISPUTES_MAX_PAGE_SIZE", 100)

    # --- Seller cap on simultaneous open disputes (0 disables the check) ---
    max_open_disputes_per_seller: int = _get_int("DISPUTES_MAX_OPEN_PER_SELLER", 0)

    # --- HTTP listener ---
    host: str = os.getenv("DISPUTES_HOST", "127.0.0.1")
    port: int = _get_int("DISPUTES_PORT", 3200)

    def __init__(self, **overrides) -> None:
        for name, value in overrides.items():
            if not hasattr(type(self), name):
                raise AttributeError(f"Unknown setting: {name}")
            setattr(self, name, value)


settings = DisputeSettings()
