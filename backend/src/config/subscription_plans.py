"""
Subscription plan catalog loader and plan period arithmetic.

Loads plan definitions from config/subscription_plans.yml, the single
source of truth for plan prices, billing periods, store product ids and
receipt fallback durations.

Consumers:
  - SubscriptionOrchestrator: checkout pricing and plan listing
  - Activation: current period computation
  - AppleReceiptService: product -> plan mapping and fallback durations

Usage:
    from src.config.subscription_plans import get_plan_catalog, plan_period_end

    catalog = get_plan_catalog()
    price = catalog.get_price("monthly")
    end = plan_period_end("monthly", datetime.now(timezone.utc))
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional

import yaml
from dateutil.relativedelta import relativedelta

from src.models.subscription import SubscriptionPlan

logger = logging.getLogger(__name__)

_CONFIG_FILENAME = "subscription_plans.yml"
_PRICE_ENV_PREFIX = "MERCADOPAGO_PRICE_"
_KNOWN_PLANS = frozenset(plan.value for plan in SubscriptionPlan)


@dataclass(frozen=True)
class PlanDefinition:
    """A single billable plan."""
    id: str
    name: str
    base_price: int
    interval: str
    period: Dict[str, int]
    duration_days: int
    apple_product_id: Optional[str] = None

    @property
    def delta(self) -> relativedelta:
        return relativedelta(**self.period)


class SubscriptionPlanCatalog:
    """
    Thread-safe loader for config/subscription_plans.yml.

    Prices can be overridden per plan via MERCADOPAGO_PRICE_<PLAN>; the
    override is read on every lookup so deploys can change prices
    without a restart of long-running workers.
    """

    def __init__(self, config_path: Optional[str] = None):
        self._config_path = config_path
        self._raw: Dict[str, Any] = {}
        self._plans: Dict[str, PlanDefinition] = {}
        self._load_lock = Lock()
        self._load()

    def _resolve_path(self) -> Path:
        if self._config_path:
            return Path(self._config_path)

        candidates = [
            # Repository root, relative to backend/src/config/
            Path(__file__).parent.parent.parent.parent / "config" / _CONFIG_FILENAME,
            Path(os.getcwd()) / "config" / _CONFIG_FILENAME,
            Path(os.getcwd()) / ".." / "config" / _CONFIG_FILENAME,
        ]

        for p in candidates:
            resolved = p.resolve()
            if resolved.exists():
                return resolved

        raise FileNotFoundError(
            f"{_CONFIG_FILENAME} not found in: {[str(p) for p in candidates]}"
        )

    def _load(self) -> None:
        with self._load_lock:
            path = self._resolve_path()
            logger.info("Loading subscription plan catalog from %s", path)

            with open(path, "r") as f:
                self._raw = yaml.safe_load(f) or {}

            plans: Dict[str, PlanDefinition] = {}
            for plan_id, cfg in (self._raw.get("plans") or {}).items():
                if plan_id not in _KNOWN_PLANS:
                    raise ValueError(
                        f"Unknown plan '{plan_id}' in {path}; expected one of {sorted(_KNOWN_PLANS)}"
                    )
                plans[plan_id] = PlanDefinition(
                    id=plan_id,
                    name=cfg.get("name", plan_id),
                    base_price=int(cfg.get("price", 0)),
                    interval=cfg.get("interval", plan_id),
                    period=dict(cfg.get("period") or {}),
                    duration_days=int(cfg.get("duration_days", 0)),
                    apple_product_id=cfg.get("apple_product_id"),
                )
            self._plans = plans

            logger.info("Loaded %d subscription plans", len(self._plans))

    def reload(self) -> None:
        """Re-read the YAML from disk."""
        self._load()

    @property
    def currency(self) -> str:
        return os.getenv("MERCADOPAGO_CURRENCY", self._raw.get("currency", "CLP"))

    @property
    def default_trial_days(self) -> int:
        return int(self._raw.get("trial_days", 3))

    @property
    def plan_ids(self) -> List[str]:
        return list(self._plans.keys())

    def get_plan(self, plan_id: str) -> Optional[PlanDefinition]:
        return self._plans.get(plan_id)

    def get_price(self, plan_id: str) -> int:
        """
        Return the effective price for a plan, or 0 when the plan is unknown.

        Resolution order:
          1. MERCADOPAGO_PRICE_<PLAN> environment variable
          2. price from the YAML catalog
        """
        plan = self._plans.get(plan_id)
        if plan is None:
            return 0
        override = os.getenv(f"{_PRICE_ENV_PREFIX}{plan_id.upper()}")
        if override:
            try:
                return int(override)
            except ValueError:
                logger.warning(
                    "Ignoring non-integer price override",
                    extra={"plan": plan_id, "value": override},
                )
        return plan.base_price

    def plan_for_product(self, product_id: str) -> Optional[str]:
        """Map an App Store product id to a plan id."""
        for plan in self._plans.values():
            if plan.apple_product_id == product_id:
                return plan.id
        return None

    def duration_days(self, plan_id: str) -> int:
        plan = self._plans.get(plan_id)
        return plan.duration_days if plan else 0

    def get_all(self) -> Dict[str, Dict[str, Any]]:
        """
        Return the catalog as a serialisable dict with savings vs monthly.
        """
        monthly = self.get_price("monthly")
        months_in = {"quarterly": 3, "semestral": 6, "yearly": 12}
        result: Dict[str, Dict[str, Any]] = {}
        for plan_id, plan in self._plans.items():
            price = self.get_price(plan_id)
            entry: Dict[str, Any] = {
                "id": plan_id,
                "name": plan.name,
                "amount": price,
                "currency": self.currency,
                "interval": plan.interval,
                "duration_days": plan.duration_days,
            }
            if plan_id in months_in and monthly:
                entry["savings"] = monthly * months_in[plan_id] - price
            result[plan_id] = entry
        return result


_catalog: Optional[SubscriptionPlanCatalog] = None
_catalog_lock = Lock()


def get_plan_catalog() -> SubscriptionPlanCatalog:
    """Get the process-wide plan catalog, loading it on first use."""
    global _catalog
    if _catalog is None:
        with _catalog_lock:
            if _catalog is None:
                _catalog = SubscriptionPlanCatalog()
    return _catalog


def plan_period_end(plan_id: str, start: datetime) -> datetime:
    """
    Compute the end of a billing period that starts at `start`.

    weekly adds 7 days; monthly/quarterly/semestral add calendar months,
    landing on the last valid day when the target month is shorter
    (Jan 31 + 1 month = Feb 28/29); yearly adds one calendar year
    (Feb 29 + 1 year = Feb 28).

    Raises:
        ValueError: If the plan is unknown
    """
    plan = get_plan_catalog().get_plan(plan_id)
    if plan is None or not plan.period:
        raise ValueError(f"Unknown plan: {plan_id}")
    return start + plan.delta
