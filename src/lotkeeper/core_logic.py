"""Shared business-layer primitives for lotkeeper.

This module bundles the pieces every workflow needs: the runtime context that
ties configuration to a live :class:`~lotkeeper.store.WorkbookStore`, the
domain exception hierarchy, the three-way :class:`Outcome` returned by
mutating workflows, and small validation and identifier helpers.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, OutcomeStatus
from .store import WorkbookStore


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class ValidationError(BusinessRuleViolation, ValueError):
    """Raised when input is rejected before any write takes place."""


class InsufficientStockError(BusinessRuleViolation):
    """Raised inside a transaction when live stock cannot cover a request."""

    def __init__(self, product_name: str, requested: int, available: int) -> None:
        self.product_name = product_name
        self.requested = requested
        self.available = available
        super().__init__(f"Only {available} available to remove/sell")


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced order, agent, or product is unknown."""


@dataclass(frozen=True)
class Outcome:
    """Result of a mutating workflow.

    ``PARTIAL`` means the primary mutation is committed and a dependent step
    failed; it is never rolled back. ``message`` is meant for the end user.
    """

    status: OutcomeStatus
    message: str
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        """True when the primary mutation is committed."""

        return self.status is not OutcomeStatus.FAILURE

    @property
    def is_partial(self) -> bool:
        return self.status is OutcomeStatus.PARTIAL

    @classmethod
    def success(cls, message: str, value: Any = None) -> "Outcome":
        return cls(OutcomeStatus.SUCCESS, message, value)

    @classmethod
    def partial(cls, message: str, value: Any = None, error: Optional[BaseException] = None) -> "Outcome":
        return cls(OutcomeStatus.PARTIAL, message, value, error)

    @classmethod
    def failure(cls, message: str, error: Optional[BaseException] = None) -> "Outcome":
        return cls(OutcomeStatus.FAILURE, message, None, error)


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and the store used by the workflows."""

    settings: data_manager.ConfigSettings
    store: WorkbookStore


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Resolve optional timestamps into consistent, timezone-aware values.

    Args:
        candidate (datetime | None): Caller-provided timestamp. When ``None``
            the current UTC time is used.

    Returns:
        datetime: ``candidate`` as-is when provided, otherwise
            ``datetime.now(UTC)``.
    """

    return candidate if candidate is not None else datetime.now(UTC)


def to_epoch_millis(when: datetime) -> int:
    """Convert a datetime to the integer epoch milliseconds stored on rows."""

    return int(when.timestamp() * 1000)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and wrap the workbook in a store.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for the workflows.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing or the
            workbook lacks a collection sheet.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    data_manager.validate_workbook(workbook)
    log.info("Loaded runtime context for store '%s' (%s)", settings.store_name, settings.data_file)
    return RuntimeContext(settings=settings, store=WorkbookStore(workbook, settings.data_file))


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """

    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


async def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory store changes to the configured workbook."""

    await context.store.persist()


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Listeners attached to the previous store are not carried over.
    """

    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, store=WorkbookStore(workbook, context.settings.data_file))


def generate_document_id(*, prefix: str, when: Optional[datetime] = None) -> str:
    """Generate a sortable, collision-resistant document identifier.

    Args:
        prefix (str): Collection designator, e.g. ``"L"`` for lots.
        when (datetime | None): Timestamp embedded in the identifier. Defaults
            to the current UTC time.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}-{hex6}``.

    The random suffix keeps identifiers unique when several documents are
    created with the same timestamp, as happens when tests freeze time.
    """

    when = _resolve_timestamp(when)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:6]}"


def require_positive_quantity(quantity: int) -> None:
    """Validate that a quantity is strictly positive.

    Raises:
        ValidationError: If ``quantity`` is zero or negative.
    """

    if quantity <= 0:
        log.warning("Quantity validation failed: %s", quantity)
        raise ValidationError("Quantity must be > 0")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValidationError: If ``amount`` is less than zero.
    """

    if amount < Decimal("0"):
        log.warning("Monetary value validation failed: %s", amount)
        raise ValidationError("Amount must be zero or positive")


def require_text(value: Optional[str], label: str) -> str:
    """Return ``value`` stripped, rejecting blank input.

    Raises:
        ValidationError: If ``value`` is ``None`` or only whitespace.
    """

    cleaned = (value or "").strip()
    if not cleaned:
        log.warning("Blank %s rejected", label)
        raise ValidationError(f"{label} is required")
    return cleaned


def describe_error(exc: BaseException) -> str:
    """Return the user-facing message of an exception."""

    return str(exc) or exc.__class__.__name__
