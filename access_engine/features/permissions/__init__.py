"""
Access decision feature module.

Combines role-based grants, role inheritance, attribute-based (ABAC)
conditions and priority-ordered conflict resolution into one audited
allow/deny decision.
"""
