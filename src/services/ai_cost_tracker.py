"""AI Cost Tracker Service for vision classification spend.

This service tracks every vision-model operation, including:
- Per-operation cost from a (provider, model) price table
- Daily and monthly running totals with calendar rollover
- Warning/critical thresholds and a hard circuit breaker
- Pre-flight authorization so concurrent calls cannot overspend together
- An optional durable ledger of every operation
"""

import asyncio
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from src.services.vision_store import VisionStore

logger = structlog.get_logger()

ZERO = Decimal("0")

# Cost per classification call in USD
DEFAULT_PRICING: dict[tuple[str, str], Decimal] = {
    ("openai", "gpt-4o"): Decimal("0.002"),
    ("openai", "gpt-4-vision-preview"): Decimal("0.003"),
    ("anthropic", "claude-3-5-sonnet-20241022"): Decimal("0.0015"),
    ("anthropic", "claude-3-opus"): Decimal("0.004"),
    ("ollama", "llava"): Decimal("0"),
    ("ollama", "bakllava"): Decimal("0"),
}

# Self-hosted providers are free unless priced explicitly
LOCAL_PROVIDERS = frozenset({"ollama"})

# Default pricing for unknown hosted models (conservative estimate)
DEFAULT_OPERATION_COST = Decimal("0.004")


def _to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class BudgetExceeded(Exception):
    """Exception raised when a non-cached operation would exceed a budget."""

    def __init__(self, current_cost: float, budget_limit: float, period: str = "daily"):
        self.current_cost = current_cost
        self.budget_limit = budget_limit
        self.period = period
        super().__init__(
            f"Budget exceeded: ${current_cost:.4f} spent of ${budget_limit:.2f} {period} limit"
        )


@dataclass
class BudgetConfig:
    """Spend limits in USD and alert thresholds as fractions of a limit."""

    daily_limit: Decimal = Decimal("10")
    monthly_limit: Decimal = Decimal("200")
    warning_threshold: float = 0.8
    critical_threshold: float = 0.95
    enable_circuit_breaker: bool = True

    def __post_init__(self):
        self.daily_limit = _to_decimal(self.daily_limit)
        self.monthly_limit = _to_decimal(self.monthly_limit)

    @classmethod
    def from_settings(cls, settings) -> "BudgetConfig":
        return cls(
            daily_limit=settings.daily_limit,
            monthly_limit=settings.monthly_limit,
            warning_threshold=settings.warning_threshold,
            critical_threshold=settings.critical_threshold,
            enable_circuit_breaker=settings.enable_circuit_breaker,
        )


@dataclass
class BudgetStatus:
    """Current spend against the daily and monthly budgets."""

    daily_used: Decimal
    daily_limit: Decimal
    daily_remaining: Decimal
    daily_percent: float
    monthly_used: Decimal
    monthly_limit: Decimal
    monthly_remaining: Decimal
    monthly_percent: float
    warning_triggered: bool
    critical_triggered: bool
    circuit_breaker_triggered: bool

    def to_dict(self) -> dict:
        return {
            "daily_used": float(self.daily_used),
            "daily_limit": float(self.daily_limit),
            "daily_remaining": float(self.daily_remaining),
            "daily_percent": self.daily_percent,
            "monthly_used": float(self.monthly_used),
            "monthly_limit": float(self.monthly_limit),
            "monthly_remaining": float(self.monthly_remaining),
            "monthly_percent": self.monthly_percent,
            "warning_triggered": self.warning_triggered,
            "critical_triggered": self.critical_triggered,
            "circuit_breaker_triggered": self.circuit_breaker_triggered,
        }


@dataclass
class CostStats:
    """Aggregate counters since the tracker was created or cleared."""

    total_cost: Decimal
    daily_cost: Decimal
    monthly_cost: Decimal
    operation_count: int
    cache_hit_count: int
    cache_hit_rate: float
    cost_by_provider: dict[str, Decimal] = field(default_factory=dict)
    cost_by_model: dict[str, Decimal] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "total_cost": float(self.total_cost),
            "daily_cost": float(self.daily_cost),
            "monthly_cost": float(self.monthly_cost),
            "operation_count": self.operation_count,
            "cache_hit_count": self.cache_hit_count,
            "cache_hit_rate": self.cache_hit_rate,
            "cost_by_provider": {k: float(v) for k, v in self.cost_by_provider.items()},
            "cost_by_model": {k: float(v) for k, v in self.cost_by_model.items()},
        }


@dataclass(frozen=True)
class Authorization:
    """A reservation of budget for one in-flight provider call."""

    id: str
    provider: str
    model: str
    amount: Decimal


class CostTracker:
    """Ledger and budget guard for vision provider calls.

    One lock guards every total, so a tracker can be shared by concurrent
    classification tasks. Paid calls should ``authorize`` before calling the
    provider and pass the authorization to ``track_operation`` afterwards;
    the reservation counts against the budget while the call is in flight.
    """

    def __init__(
        self,
        budget: Optional[BudgetConfig] = None,
        store: Optional[VisionStore] = None,
        pricing: Optional[dict[tuple[str, str], Decimal]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.budget = budget or BudgetConfig()
        self.store = store
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._pricing: dict[tuple[str, str], Decimal] = dict(DEFAULT_PRICING)
        for (provider, model), cost in (pricing or {}).items():
            self._pricing[(provider, model)] = _to_decimal(cost)

        self._lock = threading.Lock()
        self._pending: dict[str, Authorization] = {}
        self._reset_totals(self.clock())
        self.log = logger.bind(component="cost_tracker")

    def _reset_totals(self, now: datetime) -> None:
        self._day = now.date()
        self._month = (now.year, now.month)
        self._daily_spend = ZERO
        self._monthly_spend = ZERO
        self._total_cost = ZERO
        self._operation_count = 0
        self._cache_hit_count = 0
        self._by_provider: dict[str, Decimal] = {}
        self._by_model: dict[str, Decimal] = {}

    # Pricing

    def set_pricing(self, provider: str, model: str, cost_per_operation) -> None:
        with self._lock:
            self._pricing[(provider, model)] = _to_decimal(cost_per_operation)

    def get_pricing(self, provider: str, model: str) -> Decimal:
        """Cost of one operation; local providers default to zero."""
        with self._lock:
            return self._price(provider, model)

    def is_paid(self, provider: str, model: str) -> bool:
        return self.get_pricing(provider, model) > ZERO

    def _price(self, provider: str, model: str) -> Decimal:
        exact = self._pricing.get((provider, model))
        if exact is not None:
            return exact
        # Dated releases share the price of their family, e.g. claude-3-opus-20240229
        for (known_provider, known_model), cost in self._pricing.items():
            if known_provider == provider and model.startswith(known_model):
                return cost
        if provider in LOCAL_PROVIDERS:
            return ZERO
        return DEFAULT_OPERATION_COST

    # Budget enforcement

    def authorize(self, provider: str, model: str) -> Authorization:
        """Reserve the price of one call against the budget.

        Raises:
            BudgetExceeded: The circuit breaker is tripped, or the call plus
                spend plus other in-flight reservations would pass a limit
        """
        with self._lock:
            self._roll_windows()
            amount = self._price(provider, model)
            if amount > ZERO:
                self._check_budget(amount)
            authorization = Authorization(
                id=uuid.uuid4().hex,
                provider=provider,
                model=model,
                amount=amount,
            )
            if amount > ZERO:
                self._pending[authorization.id] = authorization
            return authorization

    def release(self, authorization: Authorization) -> None:
        """Return an unused reservation, e.g. after a provider failure."""
        with self._lock:
            self._pending.pop(authorization.id, None)

    def track_operation(
        self,
        provider: str,
        model: str,
        was_cached: bool,
        authorization: Optional[Authorization] = None,
    ) -> Decimal:
        """Record one operation and return the amount charged.

        Cached operations always succeed and cost nothing. A non-cached
        operation is checked against the budget before it is charged, unless
        it carries an authorization that already reserved its cost.

        Raises:
            BudgetExceeded: Charging would pass a budget limit
        """
        charged = self._account(provider, model, was_cached, authorization)
        self._persist(provider, model, charged, was_cached)
        return charged

    async def record_operation(
        self,
        provider: str,
        model: str,
        was_cached: bool,
        authorization: Optional[Authorization] = None,
    ) -> Decimal:
        """Async variant of ``track_operation`` that writes the ledger row in a worker thread."""
        charged = self._account(provider, model, was_cached, authorization)
        await asyncio.to_thread(self._persist, provider, model, charged, was_cached)
        return charged

    def _account(
        self,
        provider: str,
        model: str,
        was_cached: bool,
        authorization: Optional[Authorization],
    ) -> Decimal:
        with self._lock:
            self._roll_windows()

            if was_cached:
                self._operation_count += 1
                self._cache_hit_count += 1
                charged = ZERO
            else:
                if authorization is not None and authorization.id in self._pending:
                    charged = self._pending.pop(authorization.id).amount
                else:
                    charged = self._price(provider, model)
                    if charged > ZERO:
                        self._check_budget(charged)
                self._operation_count += 1
                self._daily_spend += charged
                self._monthly_spend += charged
                self._total_cost += charged
                self._by_provider[provider] = self._by_provider.get(provider, ZERO) + charged
                self._by_model[model] = self._by_model.get(model, ZERO) + charged

            status = self._status()

        if status.critical_triggered:
            self.log.warning(
                "AI budget critical",
                daily_percent=round(status.daily_percent, 4),
                monthly_percent=round(status.monthly_percent, 4),
            )
        elif status.warning_triggered and not was_cached:
            self.log.info(
                "AI budget warning",
                daily_percent=round(status.daily_percent, 4),
                monthly_percent=round(status.monthly_percent, 4),
            )

        return charged

    def _check_budget(self, amount: Decimal) -> None:
        # Caller holds self._lock
        if not self.budget.enable_circuit_breaker:
            return
        pending = sum((a.amount for a in self._pending.values()), ZERO)
        for period, spent, limit in (
            ("daily", self._daily_spend, self.budget.daily_limit),
            ("monthly", self._monthly_spend, self.budget.monthly_limit),
        ):
            if spent >= limit or spent + pending + amount > limit:
                self.log.warning(
                    "Circuit breaker rejected operation",
                    period=period,
                    spent=float(spent),
                    pending=float(pending),
                    cost=float(amount),
                    limit=float(limit),
                )
                raise BudgetExceeded(float(spent), float(limit), period)

    def _roll_windows(self) -> None:
        # Caller holds self._lock
        now = self.clock()
        if now.date() != self._day:
            self._day = now.date()
            self._daily_spend = ZERO
        if (now.year, now.month) != self._month:
            self._month = (now.year, now.month)
            self._monthly_spend = ZERO

    def _persist(self, provider: str, model: str, cost: Decimal, cached: bool) -> None:
        if self.store is None:
            return
        try:
            self.store.add_cost_record(
                provider=provider,
                model=model,
                cost=cost,
                cached=cached,
                timestamp=self.clock().timestamp(),
            )
        except (SQLAlchemyError, OSError) as e:
            self.log.warning("Failed to persist cost record", provider=provider, model=model, error=str(e))

    # Reporting

    def get_budget_status(self) -> BudgetStatus:
        with self._lock:
            self._roll_windows()
            return self._status()

    def _status(self) -> BudgetStatus:
        daily_percent = self._fraction(self._daily_spend, self.budget.daily_limit)
        monthly_percent = self._fraction(self._monthly_spend, self.budget.monthly_limit)
        peak = max(daily_percent, monthly_percent)
        return BudgetStatus(
            daily_used=self._daily_spend,
            daily_limit=self.budget.daily_limit,
            daily_remaining=max(ZERO, self.budget.daily_limit - self._daily_spend),
            daily_percent=daily_percent,
            monthly_used=self._monthly_spend,
            monthly_limit=self.budget.monthly_limit,
            monthly_remaining=max(ZERO, self.budget.monthly_limit - self._monthly_spend),
            monthly_percent=monthly_percent,
            warning_triggered=peak >= self.budget.warning_threshold,
            critical_triggered=peak >= self.budget.critical_threshold,
            circuit_breaker_triggered=self.budget.enable_circuit_breaker and peak >= 1.0,
        )

    @staticmethod
    def _fraction(spent: Decimal, limit: Decimal) -> float:
        if limit <= ZERO:
            return 1.0
        return float(spent / limit)

    def get_stats(self) -> CostStats:
        with self._lock:
            self._roll_windows()
            return CostStats(
                total_cost=self._total_cost,
                daily_cost=self._daily_spend,
                monthly_cost=self._monthly_spend,
                operation_count=self._operation_count,
                cache_hit_count=self._cache_hit_count,
                cache_hit_rate=(
                    self._cache_hit_count / self._operation_count if self._operation_count else 0.0
                ),
                cost_by_provider=dict(self._by_provider),
                cost_by_model=dict(self._by_model),
            )

    def update_budget(self, **changes) -> BudgetConfig:
        """Change limits or thresholds without resetting spend."""
        with self._lock:
            for name, value in changes.items():
                if not hasattr(self.budget, name):
                    raise AttributeError(f"Unknown budget option: {name}")
                if name in ("daily_limit", "monthly_limit"):
                    value = _to_decimal(value)
                setattr(self.budget, name, value)
            return self.budget

    def clear(self) -> None:
        """Reset every total and drop in-flight reservations."""
        with self._lock:
            self._pending.clear()
            self._reset_totals(self.clock())
        if self.store is not None:
            try:
                self.store.clear_cost_records()
            except (SQLAlchemyError, OSError) as e:
                self.log.warning("Failed to clear cost records", error=str(e))
