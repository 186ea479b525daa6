"""
Configuration module for the Ad Spend Optimizer
"""

from dataclasses import dataclass, field, asdict, fields
from typing import Dict, Any
import json


@dataclass
class OptimizerConfig:
    """Configuration for allocation, suggestions, execution and effect tracking"""

    # Control Value Bounds (placement bid adjustment %, 0-900)
    control_min: float = 0.0
    control_max: float = 900.0

    # Constrained Allocator
    allocation_step: float = 20.0  # Control units added/removed per band move
    allocation_half_step_ratio: float = 0.5  # [0.5x, 0.8x) band moves by half a step
    band_increase_ratio: float = 1.2  # marginal return >= 1.2x target -> increase
    band_hold_ratio: float = 0.8  # [0.8x, 1.2x) -> hold
    band_reduce_ratio: float = 0.5  # [0.5x, 0.8x) -> half-step decrease, below -> full step
    spend_sensitivity: float = 0.3  # Exposure response to control value changes
    exploration_floor_value: float = 10.0  # Control value assigned to zero-spend segments
    exploration_spend: float = 5.0  # Projected spend for an exploratory segment
    exploration_confidence: float = 0.2
    budget_tolerance: float = 0.01  # Allowed over-allocation (currency units)

    # Marginal Return Estimator
    min_clicks_for_estimate: int = 20  # Fewer clicks -> campaign-level fallback
    min_curve_points: int = 5  # Daily points needed to fit a sales/spend slope
    fallback_confidence: float = 0.3
    curve_confidence: float = 0.8

    # Suggestion Generator
    suggestion_high_spend: float = 10.0  # Spend with no orders -> decrease bid
    suggestion_pause_spend: float = 50.0  # Spend with no orders -> pause
    suggestion_no_order_bid_cut: float = 0.30
    suggestion_high_acos: float = 50.0  # ACoS % ceiling before bidding toward target
    suggestion_critical_acos: float = 80.0  # Above this the ACoS suggestion is high priority
    suggestion_target_acos: float = 30.0  # Target ACoS % for bid-toward-target
    suggestion_min_bid: float = 0.10
    suggestion_strong_cvr: float = 15.0  # CVR % floor for a bid increase
    suggestion_strong_acos: float = 20.0  # ACoS % ceiling for a bid increase
    suggestion_strong_min_clicks: int = 5
    suggestion_bid_raise: float = 0.30
    suggestion_enable_sales: float = 50.0  # Historical sales to re-enable a paused target
    suggestion_enable_acos: float = 30.0
    negation_spend: float = 15.0  # Search-term spend with no orders -> negate
    negation_min_clicks: int = 10
    negation_exact_clicks: int = 30  # Above this the negation is exact, else phrase
    negation_high_priority_spend: float = 30.0
    negation_acos: float = 100.0  # Search-term ACoS % ceiling
    negation_acos_spend: float = 10.0
    max_suggestions: int = 20

    # Outcome Predictor (horizon in days -> ramp-in multiplier)
    prediction_horizons: Dict[int, float] = field(default_factory=lambda: {7: 0.3, 14: 0.6, 30: 1.0})
    prediction_base_confidence: float = 0.5
    prediction_confidence_per_item: float = 0.02
    prediction_max_confidence: float = 0.85

    # Execution Engine
    mutation_timeout_seconds: float = 30.0
    execution_max_workers: int = 4
    baseline_window_days: int = 7

    # Effect Tracker
    attribution_delay_days: int = 3
    observation_window_days: int = 7
    roas_score_multiplier: float = 2.0
    roas_score_cap: float = 40.0
    acos_score_multiplier: float = 1.5
    acos_score_cap: float = 30.0
    cvr_score_multiplier: float = 1.0
    cvr_score_cap: float = 20.0
    sales_score_multiplier: float = 0.5
    sales_score_cap: float = 10.0
    keep_score_threshold: float = 20.0
    rollback_score_threshold: float = -20.0

    # Rollback
    enable_auto_rollback: bool = False
    auto_rollback_max_roas: float = 2.0  # Post-change ROAS must be below this
    auto_rollback_min_spend: float = 10.0  # Post-change spend must exceed this

    # Telemetry
    enable_telemetry: bool = True
    telemetry_exporter: str = 'prometheus'  # prometheus|log

    @classmethod
    def from_file(cls, config_path: str) -> 'OptimizerConfig':
        """Load configuration from JSON file"""
        with open(config_path, 'r') as f:
            config_data = json.load(f)
        return cls.from_dict(config_data)

    @classmethod
    def from_dict(cls, config_data: Dict[str, Any]) -> 'OptimizerConfig':
        """Build configuration from a plain dictionary, rejecting unknown options"""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(config_data) - known)
        if unknown:
            raise ValueError(f"Unknown configuration options: {', '.join(unknown)}")

        data = dict(config_data)
        # JSON object keys are always strings
        if 'prediction_horizons' in data:
            data['prediction_horizons'] = {
                int(horizon): float(multiplier)
                for horizon, multiplier in data['prediction_horizons'].items()
            }
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_file(self, config_path: str) -> None:
        """Save configuration to JSON file"""
        with open(config_path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def validate(self) -> bool:
        """Validate configuration values"""
        errors = []

        # Bounds
        if self.control_min < 0 or self.control_min >= self.control_max:
            errors.append("Control min must be non-negative and less than control max")

        # Allocator
        if self.allocation_step <= 0:
            errors.append("Allocation step must be positive")

        if not 0 < self.allocation_half_step_ratio <= 1:
            errors.append("Half-step ratio must be between 0 and 1")

        if not 0 < self.band_reduce_ratio < self.band_hold_ratio < self.band_increase_ratio:
            errors.append("Band ratios must satisfy 0 < reduce < hold < increase")

        if self.spend_sensitivity <= 0:
            errors.append("Spend sensitivity must be positive")

        if self.exploration_spend < 0:
            errors.append("Exploration spend must be non-negative")

        if self.budget_tolerance < 0:
            errors.append("Budget tolerance must be non-negative")

        # Estimator
        if self.min_clicks_for_estimate < 0:
            errors.append("Minimum clicks for estimate must be non-negative")

        if self.min_curve_points < 2:
            errors.append("Minimum curve points must be at least 2")

        for name in ('fallback_confidence', 'curve_confidence', 'exploration_confidence'):
            value = getattr(self, name)
            if not 0 <= value <= 1:
                errors.append(f"{name} must be between 0 and 1")

        # Suggestions
        if self.suggestion_pause_spend < self.suggestion_high_spend:
            errors.append("Pause spend threshold must be >= high spend threshold")

        if self.suggestion_min_bid <= 0:
            errors.append("Minimum bid must be positive")

        if self.suggestion_target_acos <= 0:
            errors.append("Target ACoS must be positive")

        if self.negation_exact_clicks < self.negation_min_clicks:
            errors.append("Exact negation clicks must be >= negation minimum clicks")

        if self.max_suggestions < 1:
            errors.append("Max suggestions must be at least 1")

        # Predictor
        if not self.prediction_horizons:
            errors.append("At least one prediction horizon is required")
        for horizon, multiplier in self.prediction_horizons.items():
            if horizon < 1:
                errors.append(f"Prediction horizon {horizon} must be at least 1 day")
            if not 0 < multiplier <= 1:
                errors.append(f"Horizon multiplier for {horizon} days must be in (0, 1]")

        if not 0 < self.prediction_max_confidence <= 1:
            errors.append("Prediction max confidence must be in (0, 1]")

        # Execution
        if self.mutation_timeout_seconds <= 0:
            errors.append("Mutation timeout must be positive")

        if self.execution_max_workers < 1:
            errors.append("Execution workers must be at least 1")

        if self.baseline_window_days < 1:
            errors.append("Baseline window days must be at least 1")

        # Tracking
        if self.attribution_delay_days < 0:
            errors.append("Attribution delay days must be non-negative")

        if self.observation_window_days < 1:
            errors.append("Observation window days must be at least 1")

        if self.rollback_score_threshold >= self.keep_score_threshold:
            errors.append("Rollback score threshold must be below keep threshold")

        if self.telemetry_exporter not in ('prometheus', 'log'):
            errors.append("Telemetry exporter must be 'prometheus' or 'log'")

        if errors:
            raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")

        return True
