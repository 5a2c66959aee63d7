"""FormTier tier, capability and quota dimension enums"""

from enum import Enum


class Tier(str, Enum):
    """Subscription tiers, lowest to highest.

    Ordering comes from TIER_ORDINALS in the tier catalog, never from the
    string values.
    """
    GUEST = "guest"
    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class Capability(str, Enum):
    """Gated product capabilities"""
    # Free
    BASIC_EDITOR = "basic_editor"
    FORM_CREATION = "form_creation"
    PDF_VIEWING = "pdf_viewing"

    # Pro
    ADVANCED_WORKFLOW = "advanced_workflow"
    AI_EXTRACTION = "ai_extraction"
    MULTI_SELECT = "multi_select"
    EXPORT_PDF = "export_pdf"
    CUSTOM_TEMPLATES = "custom_templates"
    PRIORITY_SUPPORT = "priority_support"
    EXPERIMENTAL_AI = "experimental_ai"

    # Enterprise
    TEAM_COLLABORATION = "team_collaboration"
    CUSTOM_BRANDING = "custom_branding"
    API_ACCESS = "api_access"
    SSO_INTEGRATION = "sso_integration"


class QuotaDimension(str, Enum):
    """Metered resources with a per-tier ceiling"""
    FORMS_COUNT = "forms_count"
    FIELDS_PER_FORM = "fields_per_form"
    MONTHLY_SUBMISSIONS = "monthly_submissions"
    STORAGE_MB = "storage_mb"
    API_CALLS_PER_HOUR = "api_calls_per_hour"


class ResetCadence(str, Enum):
    """How often a dimension's counter returns to zero"""
    NONE = "none"
    HOURLY = "hourly"
    MONTHLY = "monthly"


class CreatableResource(str, Enum):
    """Resources whose creation is tier-gated"""
    FORM = "form"
    TEMPLATE = "template"
    WORKFLOW = "workflow"
    TEAM = "team"
