"""Decision policy: risk score and page sensitivity to an action."""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from fastapi_botguard.risk import RiskScore, RuleId


class SensitivityTier(str, Enum):
    """Page-level classification that selects the decision threshold."""
    HIGH = "high"
    LOW = "low"


class Action(str, Enum):
    """Actions the policy can take."""
    ALLOW = "allow"
    CHALLENGE = "challenge"
    BLOCK = "block"


DEFAULT_THRESHOLDS: Dict[SensitivityTier, float] = {
    SensitivityTier.HIGH: 0.7,
    SensitivityTier.LOW: 0.3,
}


class PolicyConfig(BaseModel):
    """Thresholds per tier and the width of the challenge band."""

    thresholds: Dict[SensitivityTier, float] = Field(
        default_factory=lambda: dict(DEFAULT_THRESHOLDS)
    )
    challenge_band: float = Field(default=0.2, ge=0.0, le=1.0)
    # weight of the reCAPTCHA opinion when one is available
    recaptcha_weight: float = Field(default=0.5, ge=0.0, le=1.0)

    @field_validator('thresholds')
    @classmethod
    def validate_thresholds(cls, v):
        """Tiers left out keep their default threshold."""
        merged = dict(DEFAULT_THRESHOLDS)
        merged.update(v)
        for tier, threshold in merged.items():
            if not 0.0 <= threshold <= 1.0:
                raise ValueError(f"Threshold for '{tier.value}' must be within [0, 1]")
        return merged


class Decision(BaseModel):
    """Outcome of the policy for one request."""

    model_config = ConfigDict(frozen=True)

    action: Action
    tier: SensitivityTier
    threshold: float
    score: float
    risk_score: float
    recaptcha_score: Optional[float] = None
    triggered_rules: List[RuleId] = Field(default_factory=list)

    @property
    def challenge_required(self) -> bool:
        return self.action == Action.CHALLENGE


class DecisionPolicy:
    """Maps a score to allow / challenge / block for a sensitivity tier."""

    def __init__(self, config: Optional[PolicyConfig] = None):
        self.config = config or PolicyConfig()

    def threshold_for(self, tier: SensitivityTier) -> float:
        return self.config.thresholds[SensitivityTier(tier)]

    def decide(self, score: float, tier: SensitivityTier) -> Action:
        """Below threshold allows, up to threshold + band challenges, above blocks."""
        threshold = self.threshold_for(tier)
        if score < threshold:
            return Action.ALLOW
        if score < threshold + self.config.challenge_band:
            return Action.CHALLENGE
        return Action.BLOCK

    def combine(self, risk: float, recaptcha_score: Optional[float]) -> float:
        """Blend internal risk with reCAPTCHA's opinion (1.0 means human)."""
        if recaptcha_score is None:
            return risk
        weight = self.config.recaptcha_weight
        recaptcha_risk = 1.0 - min(max(recaptcha_score, 0.0), 1.0)
        return min(max((1.0 - weight) * risk + weight * recaptcha_risk, 0.0), 1.0)

    def evaluate(
        self,
        risk: RiskScore,
        tier: SensitivityTier,
        recaptcha_score: Optional[float] = None,
    ) -> Decision:
        tier = SensitivityTier(tier)
        effective = self.combine(risk.score, recaptcha_score)
        return Decision(
            action=self.decide(effective, tier),
            tier=tier,
            threshold=self.threshold_for(tier),
            score=effective,
            risk_score=risk.score,
            recaptcha_score=recaptcha_score,
            triggered_rules=list(risk.triggered_rules),
        )
