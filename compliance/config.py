from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from django.core.exceptions import ImproperlyConfigured

CYCLE_GAP_POLICIES = ('none', 'latest_ended')


@dataclass(frozen=True)
class EngineConfig:
    """
    Tunables for the credit compliance engine.

    Engine functions take an ``EngineConfig`` argument and never read Django
    settings themselves; callers build one with ``from_settings()``.
    """
    # Cycles with this many days or fewer left are ENDING_SOON
    ending_soon_days: int = 30
    # Below expected linear pace times this factor counts as non-compliant
    pace_tolerance: Decimal = Decimal('0.5')
    # Minimum completion ratio to stay AT_RISK inside the ending-soon window
    at_risk_min_ratio: Decimal = Decimal('0')
    # When set, open cycles below this completion ratio are non-compliant
    # instead of being judged on pace
    at_risk_completion_threshold: Optional[Decimal] = None
    # What get_current_cycle returns when no cycle contains today
    cycle_gap_policy: str = 'none'
    history_limit: int = 50
    default_required_credits: Decimal = Decimal('120')
    default_cycle_years: int = 5

    def __post_init__(self):
        if self.cycle_gap_policy not in CYCLE_GAP_POLICIES:
            raise ImproperlyConfigured(
                f"cycle_gap_policy must be one of {CYCLE_GAP_POLICIES}, got {self.cycle_gap_policy!r}"
            )
        if self.ending_soon_days < 0:
            raise ImproperlyConfigured("ending_soon_days must be non-negative")
        if self.pace_tolerance < 0 or self.at_risk_min_ratio < 0:
            raise ImproperlyConfigured("pace_tolerance and at_risk_min_ratio must be non-negative")
        if self.at_risk_completion_threshold is not None and self.at_risk_completion_threshold < 0:
            raise ImproperlyConfigured("at_risk_completion_threshold must be non-negative")

    @classmethod
    def from_settings(cls, settings_obj=None):
        if settings_obj is None:
            from django.conf import settings as settings_obj
        values = getattr(settings_obj, 'COMPLIANCE_ENGINE', {})
        defaults = cls()
        threshold = values.get('AT_RISK_COMPLETION_THRESHOLD')
        return cls(
            ending_soon_days=int(values.get('ENDING_SOON_DAYS', defaults.ending_soon_days)),
            pace_tolerance=Decimal(str(values.get('PACE_TOLERANCE', defaults.pace_tolerance))),
            at_risk_min_ratio=Decimal(str(values.get('AT_RISK_MIN_RATIO', defaults.at_risk_min_ratio))),
            at_risk_completion_threshold=None if threshold in (None, '') else Decimal(str(threshold)),
            cycle_gap_policy=values.get('CYCLE_GAP_POLICY', defaults.cycle_gap_policy),
            history_limit=int(values.get('HISTORY_LIMIT', defaults.history_limit)),
            default_required_credits=Decimal(
                str(values.get('DEFAULT_REQUIRED_CREDITS', defaults.default_required_credits))
            ),
            default_cycle_years=int(values.get('DEFAULT_CYCLE_YEARS', defaults.default_cycle_years)),
        )


DEFAULT_CONFIG = EngineConfig()
