"""Construction of a ready-to-use limiter from settings."""

import logging
from typing import Optional

from quota_guard.config.loader import DEFAULT_RULE_TABLE, RuleTable, load_rule_table
from quota_guard.config.settings import QuotaGuardSettings
from quota_guard.storage.repository import UsageRepository, initialize_schema

from .limiter import RateLimiter
from .retry import RetryingUsageStore, RetryOptions

logger = logging.getLogger(__name__)


def load_rules(settings: QuotaGuardSettings) -> RuleTable:
    """Return the YAML rule table named in settings, or the built-in one."""
    if settings.rules_file:
        logger.info("Loading rate limit rules from %s", settings.rules_file)
        return load_rule_table(settings.rules_file)
    return DEFAULT_RULE_TABLE


def build_limiter(
    settings: Optional[QuotaGuardSettings] = None,
    retry_options: Optional[RetryOptions] = None
) -> RateLimiter:
    """Build a limiter over the SQLite ledger named in settings.

    The schema is created if missing. With ``retry_options`` the store is
    wrapped so lock contention and timeouts are retried.
    """
    settings = settings or QuotaGuardSettings()
    initialize_schema(settings.db_path)
    store = UsageRepository(settings.db_path)
    if retry_options is not None:
        store = RetryingUsageStore(store, retry_options)
    return RateLimiter(store=store, rules=load_rules(settings))
