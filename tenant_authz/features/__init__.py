from tenant_authz.features.toggle import (
    FeatureContext,
    FeatureFlagState,
    FeatureToggleService,
    ToggleResult,
)

__all__ = [
    "FeatureContext",
    "FeatureFlagState",
    "FeatureToggleService",
    "ToggleResult",
]
