import logging
import os
from dataclasses import dataclass, field, fields
from typing import Dict, Optional

import yaml
from dotenv import load_dotenv

from .errors import ValidationError

load_dotenv()

logger = logging.getLogger(__name__)


DEFAULTS = {
    "partner": {
        "auto_apply_threshold": 89,
        "max_suggestions": 3,
        "iban_confidence": 100,
        "vat_confidence": 95,
        "website_confidence": 90,
        "alias_confidence": 90,
        "name_confidence_min": 60,
        "name_confidence_max": 90,
        "name_min_similarity": 60,
        "ai_lookup_confidence": 89,
        "min_pattern_confidence": 50,
    },
    "document": {
        "auto_match_threshold": 85,
        "suggestion_threshold": 50,
        "date_range_days_before": 30,
        "date_range_days_after": 7,
        "max_files_per_partner": 100,
        "max_transactions_per_partner": 50,
        "scoring_workers": 4,
    },
    "category": {
        "auto_apply_threshold": 89,
        "suggestion_threshold": 60,
        "partner_match_confidence": 89,
        "combined_match_bonus": 15,
        "usage_boost_max": 10,
        "no_file_patterns_boost": 8,
        "max_suggestions": 3,
    },
    "ai": {
        "enabled": True,
        "min_unmatched_for_ai": 2,
        "match_confidence": 90,
        "timeout_seconds": 30,
        "model": "claude-3-5-sonnet-20241022",
        "max_tokens": 2000,
    },
    "agent": {
        "max_iterations": 3,
        "provider_timeout_seconds": 20,
    },
    "learning": {
        "max_manual_removals": 50,
        "correction_pattern_confidence": 90,
        "file_pattern_confidence": 80,
    },
    "persistence": {
        "chunk_size": 150,
    },
}


@dataclass
class PartnerConfig:
    auto_apply_threshold: int = 89
    max_suggestions: int = 3
    iban_confidence: int = 100
    vat_confidence: int = 95
    website_confidence: int = 90
    alias_confidence: int = 90
    name_confidence_min: int = 60
    name_confidence_max: int = 90
    name_min_similarity: int = 60
    ai_lookup_confidence: int = 89
    min_pattern_confidence: int = 50


@dataclass
class DocumentConfig:
    auto_match_threshold: int = 85
    suggestion_threshold: int = 50
    date_range_days_before: int = 30
    date_range_days_after: int = 7
    max_files_per_partner: int = 100
    max_transactions_per_partner: int = 50
    scoring_workers: int = 4


@dataclass
class CategoryConfig:
    auto_apply_threshold: int = 89
    suggestion_threshold: int = 60
    partner_match_confidence: int = 89
    combined_match_bonus: int = 15
    usage_boost_max: int = 10
    no_file_patterns_boost: int = 8
    max_suggestions: int = 3


@dataclass
class AIConfig:
    enabled: bool = True
    min_unmatched_for_ai: int = 2
    match_confidence: int = 90
    timeout_seconds: float = 30
    model: str = "claude-3-5-sonnet-20241022"
    max_tokens: int = 2000


@dataclass
class AgentConfig:
    max_iterations: int = 3
    provider_timeout_seconds: float = 20


@dataclass
class LearningConfig:
    max_manual_removals: int = 50
    correction_pattern_confidence: int = 90
    file_pattern_confidence: int = 80


@dataclass
class PersistenceConfig:
    chunk_size: int = 150


@dataclass
class MatchingConfig:
    """閾値などの設定一式。デフォルトを持ち、デプロイ/テストごとに上書き可能"""
    partner: PartnerConfig = field(default_factory=PartnerConfig)
    document: DocumentConfig = field(default_factory=DocumentConfig)
    category: CategoryConfig = field(default_factory=CategoryConfig)
    ai: AIConfig = field(default_factory=AIConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    learning: LearningConfig = field(default_factory=LearningConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)

    @classmethod
    def from_dict(cls, data: Dict) -> "MatchingConfig":
        sections = {}
        for f in fields(cls):
            section_cls = f.default_factory
            raw = (data or {}).get(f.name) or {}
            known = {sf.name for sf in fields(section_cls)}
            unknown = set(raw) - known
            if unknown:
                logger.warning("Unknown config keys in [%s]: %s", f.name, sorted(unknown))
            sections[f.name] = section_cls(**{k: v for k, v in raw.items() if k in known})
        cfg = cls(**sections)
        cfg.validate()
        return cfg

    def validate(self):
        checks = {
            "partner.auto_apply_threshold": self.partner.auto_apply_threshold,
            "document.auto_match_threshold": self.document.auto_match_threshold,
            "document.suggestion_threshold": self.document.suggestion_threshold,
            "category.auto_apply_threshold": self.category.auto_apply_threshold,
            "category.suggestion_threshold": self.category.suggestion_threshold,
            "ai.match_confidence": self.ai.match_confidence,
        }
        for name, value in checks.items():
            if not 0 <= value <= 100:
                raise ValidationError(f"{name} must be within 0..100 (got {value})")
        if self.document.suggestion_threshold > self.document.auto_match_threshold:
            raise ValidationError("document.suggestion_threshold must not exceed auto_match_threshold")
        if self.category.suggestion_threshold > self.category.auto_apply_threshold:
            raise ValidationError("category.suggestion_threshold must not exceed auto_apply_threshold")
        if self.agent.max_iterations < 1:
            raise ValidationError("agent.max_iterations must be >= 1")
        if self.learning.max_manual_removals < 1:
            raise ValidationError("learning.max_manual_removals must be >= 1")
        if self.persistence.chunk_size < 1:
            raise ValidationError("persistence.chunk_size must be >= 1")


def _default_config_path() -> str:
    return os.getenv(
        "MATCHING_CONFIG_PATH",
        os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "config", "matching.yml"),
    )


def load_matching_config(path: Optional[str] = None) -> MatchingConfig:
    path = path or _default_config_path()
    try:
        with open(path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return MatchingConfig.from_dict(DEFAULTS)

    # shallow merge defaults
    merged = {k: dict(v) for k, v in DEFAULTS.items()}
    for k, v in (cfg or {}).items():
        if isinstance(v, dict) and isinstance(merged.get(k), dict):
            merged[k].update(v)
        else:
            merged[k] = v
    return MatchingConfig.from_dict(merged)
