"""Resolve ledger categories and payees to accounting accounts and contacts.

Resolution tries an exact name match, then the best fuzzy match among the top
candidates, then (when allowed) creates a new entity. The outcome, including
"no match", is persisted to the staging store and cached for the lifetime of
the resolver so one pass never searches for or creates the same entity twice.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from .connectors.accounting import AccountingClient
from .connectors.staging import StagingStoreClient
from .errors import LedgerSyncError
from .matching import (
    DEFAULT_MATCH_THRESHOLD,
    find_best_match,
    generate_account_code,
    sanitize_account_name,
    sanitize_contact_name,
)
from .schemas import AccountingAccount, AccountingContact, CategoryMapping, PayeeMapping

logger = logging.getLogger(__name__)

Mapping = CategoryMapping | PayeeMapping


class MappingKind(str, Enum):
    """Which side of a transaction a mapping belongs to."""

    CATEGORY = "category"
    PAYEE = "payee"


@dataclass(frozen=True)
class ResolutionPolicy:
    """How aggressively to resolve a missing mapping."""

    auto_create: bool = True
    match_threshold: float = DEFAULT_MATCH_THRESHOLD
    candidate_limit: int = 10
    account_type: str = "EXPENSE"
    dry_run: bool = False


@dataclass
class ResolverStats:
    """Counters for one resolver lifetime."""

    searched: int = 0
    exact_matches: int = 0
    fuzzy_matches: int = 0
    created: int = 0
    unresolved: int = 0
    errors: int = 0

    @property
    def resolved(self) -> int:
        return self.exact_matches + self.fuzzy_matches + self.created


@dataclass
class _Match:
    id: str
    name: str
    code: str | None = None


class MappingResolver:
    """Find-or-create resolution of category and payee mappings."""

    def __init__(
        self,
        staging: StagingStoreClient,
        accounting: AccountingClient | None,
        policy: ResolutionPolicy | None = None,
        code_generator: Callable[[str], str] = generate_account_code,
    ):
        """Initialize the resolver.

        Args:
            staging: Where mappings are persisted
            accounting: Where accounts and contacts are searched and created;
                without it nothing can be resolved
            policy: Default resolution policy
            code_generator: Account code generator for auto-created accounts
        """
        self.staging = staging
        self.accounting = accounting
        self.policy = policy or ResolutionPolicy()
        self.stats = ResolverStats()
        self._code_generator = code_generator
        self._cache: dict[tuple[MappingKind, str], Mapping | None] = {}

    def with_policy(self, **overrides: Any) -> ResolutionPolicy:
        return replace(self.policy, **overrides)

    def reset(self) -> None:
        """Forget cached results and counters."""
        self._cache.clear()
        self.stats = ResolverStats()

    def cached(self, kind: MappingKind, entity_id: str) -> bool:
        return (kind, entity_id) in self._cache

    def resolve(
        self,
        entity_id: str,
        entity_name: str | None,
        kind: MappingKind,
        policy: ResolutionPolicy | None = None,
    ) -> Mapping | None:
        """Resolve one ledger category or payee.

        Args:
            entity_id: Ledger category or payee ID
            entity_name: Ledger display name used for matching
            kind: Category or payee
            policy: Overrides the resolver's default policy

        Returns:
            The resolved mapping, or None when the entity stays unmapped
        """
        key = (kind, entity_id)
        if key in self._cache:
            return self._cache[key]

        policy = policy or self.policy
        mapping = self._resolve(entity_id, entity_name, kind, policy)
        self._cache[key] = mapping
        if mapping is None:
            self.stats.unresolved += 1
        return mapping

    def _resolve(
        self,
        entity_id: str,
        entity_name: str | None,
        kind: MappingKind,
        policy: ResolutionPolicy,
    ) -> Mapping | None:
        if self.accounting is None:
            logger.debug(f"No accounting client; {kind.value} {entity_id} stays unmapped")
            return None

        name = (entity_name or "").strip()
        if not name:
            logger.warning(f"⚠️  {kind.value.title()} {entity_id} has no name to match on")
            return None

        self.stats.searched += 1
        try:
            match = self._find(name, kind, policy)
            if match is None and policy.auto_create:
                if policy.dry_run:
                    logger.info(f"[dry run] Would create {kind.value} entity '{name}'")
                else:
                    match = self._create(name, kind, policy)
        except LedgerSyncError as e:
            self.stats.errors += 1
            logger.error(f"❌ Failed to resolve {kind.value} '{name}' ({entity_id}): {e}")
            return None

        if match is None:
            logger.warning(
                f"No {kind.value} match found for '{name}' and auto-create is "
                f"{'disabled' if not policy.auto_create else 'skipped in dry run'}"
            )

        mapping = self._build_mapping(entity_id, name, kind, match)
        if not policy.dry_run:
            mapping = self._persist(mapping)

        return mapping if match is not None else None

    def _find(
        self, name: str, kind: MappingKind, policy: ResolutionPolicy
    ) -> _Match | None:
        assert self.accounting is not None
        search = (
            self.accounting.search_accounts
            if kind is MappingKind.CATEGORY
            else self.accounting.search_contacts
        )

        exact = search(name, exact=True, limit=1)
        if exact:
            self.stats.exact_matches += 1
            logger.debug(f"Found exact {kind.value} match for '{name}': {exact[0].name}")
            return _to_match(exact[0])

        candidates = search(name, exact=False, limit=policy.candidate_limit)
        best = find_best_match(
            name, candidates, key=lambda c: c.name, threshold=policy.match_threshold
        )
        if best is None:
            return None

        candidate, score = best
        self.stats.fuzzy_matches += 1
        logger.info(
            f"Found fuzzy {kind.value} match for '{name}': {candidate.name} "
            f"(score: {score:.2f})"
        )
        return _to_match(candidate)

    def _create(
        self, name: str, kind: MappingKind, policy: ResolutionPolicy
    ) -> _Match:
        assert self.accounting is not None
        if kind is MappingKind.CATEGORY:
            clean = sanitize_account_name(name)
            logger.info(f"No account match found for '{name}', creating '{clean}'")
            created: AccountingAccount | AccountingContact = (
                self.accounting.create_account(
                    clean,
                    code=self._code_generator(clean),
                    account_type=policy.account_type,
                )
            )
        else:
            clean = sanitize_contact_name(name)
            logger.info(f"No contact match found for '{name}', creating '{clean}'")
            created = self.accounting.create_contact(clean)

        self.stats.created += 1
        return _to_match(created)

    @staticmethod
    def _build_mapping(
        entity_id: str, name: str, kind: MappingKind, match: _Match | None
    ) -> Mapping:
        if kind is MappingKind.CATEGORY:
            return CategoryMapping(
                ledger_category_id=entity_id,
                name=name,
                accounting_account_id=match.id if match else None,
                accounting_account_name=match.name if match else None,
                account_code=match.code if match else None,
            )
        return PayeeMapping(
            ledger_payee_id=entity_id,
            name=name,
            accounting_contact_id=match.id if match else None,
            accounting_contact_name=match.name if match else None,
        )

    def _persist(self, mapping: Mapping) -> Mapping:
        try:
            if isinstance(mapping, CategoryMapping):
                return self.staging.upsert_category_mapping(mapping)
            return self.staging.upsert_payee_mapping(mapping)
        except LedgerSyncError as e:
            # The resolved ids are still usable for this run's transactions
            self.stats.errors += 1
            logger.error(f"❌ Failed to persist mapping {mapping.name}: {e}")
            return mapping


def _to_match(entity: AccountingAccount | AccountingContact) -> _Match:
    return _Match(
        id=entity.id,
        name=entity.name,
        code=entity.code if isinstance(entity, AccountingAccount) else None,
    )
