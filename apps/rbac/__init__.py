"""
RBAC (Role-Based Access Control) application.

Provides organization-scoped access control with:
- Global user identity
- Default and custom roles per organization
- Permission resolution with a superadmin bypass
- Ownership transfer and the owner floor
"""
