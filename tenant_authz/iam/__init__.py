"""
Identity and access management.

Modules:
- errors: ContextError and configuration errors
- permission_keys: permission key validation
- context: principals and header-based scope resolution
- role_permissions: granted keys per role
- cache / access_snapshot: two-tier access snapshot store
- gates: permission-entitlement gate evaluation
- permissions: scoped permission checks and entitled catalog
- roles: role grant mutation with snapshot invalidation
- bundles: Read/Write/Manage grouping of the permission catalog
"""
