"""Configuration audit: reports misconfigurations, never raises."""

from dataclasses import dataclass, field
from enum import Enum

from protech.sync.environment import Environment, EnvironmentProfile
from protech.sync.policy import Feature, FeatureFlags, SecuritySettings

# Features that must never be switched on for production
DEV_ONLY_FEATURES = frozenset({Feature.DEBUG_TOOLS, Feature.BETA_FEATURES})

MAX_SAFE_LOGIN_ATTEMPTS = 10


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class IssueKind(str, Enum):
    MISSING_REMOTE_URL = "missing_remote_url"
    MISSING_REMOTE_KEY = "missing_remote_key"
    MISSING_ERROR_REPORTING_ENDPOINT = "missing_error_reporting_endpoint"
    INSECURE_TRANSPORT = "insecure_transport"
    EXCESSIVE_LOGIN_ATTEMPTS = "excessive_login_attempts"
    DEV_FEATURES_IN_PRODUCTION = "dev_features_in_production"


_SEVERITY = {
    IssueKind.MISSING_REMOTE_URL: Severity.CRITICAL,
    IssueKind.MISSING_REMOTE_KEY: Severity.CRITICAL,
    IssueKind.MISSING_ERROR_REPORTING_ENDPOINT: Severity.HIGH,
    IssueKind.INSECURE_TRANSPORT: Severity.HIGH,
    IssueKind.EXCESSIVE_LOGIN_ATTEMPTS: Severity.MEDIUM,
    IssueKind.DEV_FEATURES_IN_PRODUCTION: Severity.LOW,
}


@dataclass(frozen=True)
class ConfigurationIssue:
    kind: IssueKind
    description: str
    features: frozenset = field(default_factory=frozenset)

    @property
    def severity(self) -> Severity:
        return _SEVERITY[self.kind]


def validate_configuration(environment: Environment,
                           profile: EnvironmentProfile,
                           security: SecuritySettings,
                           flags: FeatureFlags) -> list[ConfigurationIssue]:
    """Return every issue found; an empty list means the config is clean."""
    issues = []
    is_production = environment == Environment.PRODUCTION

    if not profile.remote_url:
        issues.append(ConfigurationIssue(
            IssueKind.MISSING_REMOTE_URL,
            "Remote backend URL is not configured",
        ))
    if not profile.remote_key:
        issues.append(ConfigurationIssue(
            IssueKind.MISSING_REMOTE_KEY,
            "Remote backend API key is not configured",
        ))
    if is_production and not profile.error_reporting_dsn:
        issues.append(ConfigurationIssue(
            IssueKind.MISSING_ERROR_REPORTING_ENDPOINT,
            "Error reporting endpoint is not configured for production",
        ))
    if is_production and not security.require_https:
        issues.append(ConfigurationIssue(
            IssueKind.INSECURE_TRANSPORT,
            "HTTPS is not required in production",
        ))
    # Applies to every environment, unlike the production-only rules above
    if security.max_login_attempts > MAX_SAFE_LOGIN_ATTEMPTS:
        issues.append(ConfigurationIssue(
            IssueKind.EXCESSIVE_LOGIN_ATTEMPTS,
            f"Maximum login attempts is too high "
            f"({security.max_login_attempts} > {MAX_SAFE_LOGIN_ATTEMPTS})",
        ))
    if is_production:
        offending = DEV_ONLY_FEATURES & flags.production_features
        if offending:
            names = ", ".join(sorted(f.value for f in offending))
            issues.append(ConfigurationIssue(
                IssueKind.DEV_FEATURES_IN_PRODUCTION,
                f"Development features enabled in production: {names}",
                frozenset(offending),
            ))
    return issues
