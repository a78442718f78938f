"""
tenant_authz - authorization and entitlement resolution for agency/subaccount tenants.

Layers (leaf first):
- core: scope keys and clock helpers
- entitlements: plan + add-on + override resolution
- iam: access snapshots, permission gates, scope resolution, role grants
- policy: the canPerform decision pipeline
- features: per-user feature toggles
- api: FastAPI boundary adapters
"""
