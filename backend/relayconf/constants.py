"""
Application constants with documented reasoning.

This file centralizes "magic numbers" used throughout the codebase,
providing clear documentation for why each value was chosen.
"""

# =============================================================================
# SECRETS & ENCRYPTION
# =============================================================================

# Master secret minimum length - shorter secrets are refused at startup
# 32 characters is the floor for a human-chosen passphrase feeding PBKDF2
MIN_MASTER_SECRET_LENGTH = 32

# PBKDF2-HMAC-SHA256 iterations for deriving the vault key
# Derivation runs on every encrypt/decrypt, so this trades CPU for brute-force cost
KDF_ITERATIONS = 100_000

# AES-256 key size in bytes
KDF_KEY_LENGTH_BYTES = 32

# Per-record salt size - 16 bytes makes salt reuse across records negligible
KDF_SALT_SIZE_BYTES = 16

# GCM nonce should be 12 bytes per NIST recommendations
GCM_NONCE_SIZE_BYTES = 12

# Placeholder shown instead of secret values in diffs, audit entries and logs
REDACTED = "***REDACTED***"

# Vault record name prefix for relay host credentials
RELAY_AUTH_SECRET_PREFIX = "relay-auth:"

# =============================================================================
# DATABASE
# =============================================================================

# SQLite busy timeout - wait for locks before failing
# 5 seconds handles most concurrent access without long hangs
# Prevents "database is locked" errors under normal load
SQLITE_BUSY_TIMEOUT_MS = 5000

# =============================================================================
# APPLY PIPELINE
# =============================================================================

# Bounded wait for the apply lock
# A reload normally finishes within a couple of seconds; waiting longer than
# this means another apply is stuck and the caller should be told it is busy
LOCK_TIMEOUT_SECONDS = 10.0

# Interval between non-blocking attempts on the on-disk advisory lock
LOCK_POLL_INTERVAL_SECONDS = 0.05

# Timeout for each Postfix command (check, reload, status, postmap)
# postfix reload returns once the master process has been signalled
COMMAND_TIMEOUT_SECONDS = 30.0

# Free space required in the config directory before writing a candidate
# main.cf is a few KB; 1 MB leaves room for backups and the pending copy
MIN_FREE_BYTES = 1024 * 1024

# Prefix for per-operation pending directories inside the config directory
PENDING_DIR_PREFIX = ".relayconf-pending-"

# Backup file timestamp format (sortable, filesystem safe)
BACKUP_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S-%f"

# Maximum length of any single parameter value
MAX_VALUE_LENGTH = 4096

# Lookup tables (transport, sender relays) hold one entry per line and can
# grow much longer than a main.cf value
MAX_TABLE_LENGTH = 65536

# =============================================================================
# HISTORY & RETENTION
# =============================================================================

# Default number of versions returned by list_history
DEFAULT_HISTORY_LIMIT = 50

# Number of timestamped backups kept per file
# Version history covers older states; backups only serve compensation
BACKUP_KEEP_COUNT = 20

# Audit log retention
AUDIT_RETENTION_DAYS = 90

# Retention cleanup interval
# Hourly is sufficient - retention is measured in days, not seconds
RETENTION_CLEANUP_INTERVAL_SECONDS = 3600
