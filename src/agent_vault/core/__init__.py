# Core Module - Shared Utilities
#
# Core module provides functionality shared by every AgentVault module:
# - Exception taxonomy (core.exceptions)
# - Audit trail (core.audit_log)
# - SQLite connection helper (core.db)
#
# Nothing is re-exported here: vault.encryption imports core.exceptions
# and core.audit_log imports vault.encryption.
