"""
自動化パイプラインの定義（メタデータのみ）

管理ツールが読み取る静的な記述。信頼度の範囲は設定値から組み立てるので、
閾値を変えれば表示も追従する。
"""

from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional, Tuple

from .config_loader import MatchingConfig

STEP_TRIGGERS = ("always", "if_no_match", "if_integration")
PIPELINE_TRIGGERS = ("on_import", "on_partner_create", "on_file_upload", "on_extraction_complete", "chained")


@dataclass(frozen=True)
class ConfidenceRange:
    min: int
    max: int
    unit: str = "percent"


@dataclass(frozen=True)
class AutomationStep:
    id: str
    name: str
    description: str
    order: int
    trigger: str
    category: str  # matching|search|ai
    affected_fields: Tuple[str, ...] = ()
    confidence: Optional[ConfidenceRange] = None
    integration_id: Optional[str] = None
    can_create_entities: bool = False


@dataclass(frozen=True)
class PipelineTrigger:
    type: str
    description: str


@dataclass(frozen=True)
class AutomationPipeline:
    id: str
    name: str
    description: str
    triggers: Tuple[PipelineTrigger, ...] = field(default_factory=tuple)
    steps: Tuple[AutomationStep, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict:
        return asdict(self)


_PARTNER_FIELDS = ("partner_id", "partner_type", "partner_confidence")


def partner_matching_steps(cfg: MatchingConfig) -> Tuple[AutomationStep, ...]:
    p = cfg.partner
    return (
        AutomationStep("partner-iban-match", "IBAN Match", "Match by bank account number",
                       1, "always", "matching", _PARTNER_FIELDS,
                       ConfidenceRange(p.iban_confidence, p.iban_confidence)),
        AutomationStep("partner-pattern-match", "Learned Pattern Match",
                       "Match using patterns learned from previous assignments",
                       2, "always", "matching", _PARTNER_FIELDS + ("partner_suggestions",),
                       ConfidenceRange(p.min_pattern_confidence, 100)),
        AutomationStep("partner-vat-match", "VAT ID Match", "Match by VAT identification number",
                       3, "always", "matching", _PARTNER_FIELDS,
                       ConfidenceRange(p.vat_confidence, p.vat_confidence)),
        AutomationStep("partner-website-match", "Website Match", "Match by company website in transaction text",
                       4, "always", "matching", _PARTNER_FIELDS,
                       ConfidenceRange(p.website_confidence, p.website_confidence)),
        AutomationStep("partner-alias-match", "Manual Alias Match", "Match using glob aliases defined on partners",
                       5, "always", "matching", _PARTNER_FIELDS,
                       ConfidenceRange(p.alias_confidence, p.alias_confidence)),
        AutomationStep("partner-fuzzy-name-match", "Fuzzy Name Match", "Match by similar company name",
                       6, "always", "matching", _PARTNER_FIELDS + ("partner_suggestions",),
                       ConfidenceRange(p.name_confidence_min, p.name_confidence_max)),
        AutomationStep("partner-ai-lookup", "AI Company Lookup", "Identify an unknown company with the reasoning service",
                       7, "if_no_match", "ai", _PARTNER_FIELDS,
                       ConfidenceRange(p.ai_lookup_confidence, p.ai_lookup_confidence),
                       can_create_entities=True),
    )


def file_matching_steps(cfg: MatchingConfig) -> Tuple[AutomationStep, ...]:
    d, c = cfg.document, cfg.category
    return (
        AutomationStep("file-transaction-matching", "Transaction Matching",
                       f"Score files by amount, date, partner and source pattern; "
                       f"{d.auto_match_threshold}+ auto-connects, {d.suggestion_threshold}+ is suggested",
                       1, "always", "matching", ("document_ids",),
                       ConfidenceRange(d.suggestion_threshold, 100)),
        AutomationStep("file-gmail-search", "Gmail Invoice Search", "Search email attachments for invoices",
                       2, "if_integration", "search", ("document_ids",), integration_id="gmail"),
        AutomationStep("category-partner-match", "No-Receipt: Partner Match",
                       "Match by a partner previously assigned to a no-receipt category",
                       3, "if_no_match", "matching", ("category_id", "category_suggestions"),
                       ConfidenceRange(c.partner_match_confidence, c.partner_match_confidence)),
        AutomationStep("category-pattern-match", "No-Receipt: Pattern Match",
                       "Match using patterns learned from no-receipt category assignments",
                       4, "if_no_match", "matching", ("category_id", "category_suggestions"),
                       ConfidenceRange(c.suggestion_threshold, 100)),
    )


def build_pipelines(cfg: Optional[MatchingConfig] = None) -> Tuple[AutomationPipeline, ...]:
    cfg = cfg or MatchingConfig()
    find_partner = AutomationPipeline(
        id="find-partner",
        name="Find Partner for Transaction",
        description=f"Identify the counterparty; {cfg.partner.auto_apply_threshold}%+ is auto-applied",
        triggers=(
            PipelineTrigger("on_import", "New transactions imported from a bank account"),
            PipelineTrigger("on_partner_create", "Re-evaluate unmatched transactions when a partner is created"),
        ),
        steps=partner_matching_steps(cfg),
    )
    find_file = AutomationPipeline(
        id="find-file",
        name="Find Receipt for Transaction",
        description=(
            f"Connect receipts at {cfg.document.auto_match_threshold}+ points or apply a no-receipt "
            f"category at {cfg.category.auto_apply_threshold}%+"
        ),
        triggers=(
            PipelineTrigger("on_file_upload", "A new file was uploaded"),
            PipelineTrigger("on_extraction_complete", "Invoice fields were extracted"),
            PipelineTrigger("chained", "A partner was assigned to a transaction"),
        ),
        steps=file_matching_steps(cfg),
    )
    return (find_partner, find_file)


ALL_PIPELINES = build_pipelines()


def get_pipeline(pipeline_id: str, pipelines: Tuple[AutomationPipeline, ...] = ALL_PIPELINES) -> AutomationPipeline:
    for pipeline in pipelines:
        if pipeline.id == pipeline_id:
            return pipeline
    raise KeyError(pipeline_id)


def pipelines_for_trigger(trigger: str, pipelines: Tuple[AutomationPipeline, ...] = ALL_PIPELINES) -> List[AutomationPipeline]:
    return [p for p in pipelines if any(t.type == trigger for t in p.triggers)]
