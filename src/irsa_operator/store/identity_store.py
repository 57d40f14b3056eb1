"""
Identity mapping store.

Durable record of {namespace, serviceAccount} -> {roleArn, audience,
fingerprint}. Every entry carries a version that doubles as its
compare-and-swap token: writers pass the version they read and the store
rejects the write if another writer got there first.

The in-memory store below is the reference implementation. Durable
backends override ``_snapshot`` and ``_commit`` only; all checks live here.
"""

import logging
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

from irsa_operator.errors import ConflictError, NotFoundError
from irsa_operator.models import IdentityMapping, MappingKey

logger = logging.getLogger(__name__)


def mapping_ref(namespace: str, service_account: str) -> str:
    return f"IdentityMapping/{namespace}/{service_account}"


@dataclass(frozen=True)
class StoredMapping:
    """A mapping together with its per-key version."""

    mapping: IdentityMapping
    version: int


class IdentityMappingStore:
    """
    Thread-safe in-memory identity mapping store.

    Versions start at 1 for a newly created entry. An ``expected_version`` of
    0 means "must not exist yet".
    """

    def __init__(self):
        self._entries: dict[MappingKey, StoredMapping] = {}
        self._lock = threading.RLock()

    # Backend hooks

    def _snapshot(self) -> tuple[dict[MappingKey, StoredMapping], Any]:
        """Return a private copy of all entries and a backend commit token."""
        return dict(self._entries), None

    def _commit(self, entries: dict[MappingKey, StoredMapping], token: Any) -> None:
        """Persist a full set of entries read under ``token``."""
        self._entries = entries

    # Public API

    def put(self, mapping: IdentityMapping, expected_version: int | None = None) -> int:
        """
        Create or replace a mapping.

        Args:
            mapping: Mapping to store
            expected_version: Version the caller read, 0 for "must not exist",
                None to write unconditionally

        Returns:
            The new version of the entry

        Raises:
            ValidationError: If the mapping fails its grammar checks
            ConflictError: If expected_version does not match the stored version
        """
        mapping.ensure_valid()
        key = mapping.key
        with self._lock:
            entries, token = self._snapshot()
            current = entries.get(key)
            current_version = current.version if current else 0
            if expected_version is not None and expected_version != current_version:
                raise ConflictError(
                    mapping.ref,
                    message=(
                        f"{mapping.ref} is at version {current_version}, "
                        f"expected {expected_version}"
                    ),
                )
            new_version = current_version + 1
            entries[key] = StoredMapping(mapping=mapping, version=new_version)
            self._commit(entries, token)
        logger.debug(f"Stored {mapping.ref} at version {new_version}")
        return new_version

    def get_versioned(self, namespace: str, service_account: str) -> StoredMapping:
        with self._lock:
            entries, _ = self._snapshot()
        stored = entries.get((namespace, service_account))
        if stored is None:
            raise NotFoundError(mapping_ref(namespace, service_account))
        return stored

    def get(self, namespace: str, service_account: str) -> IdentityMapping:
        """
        Fetch one mapping.

        Raises:
            NotFoundError: If no mapping exists for the key
        """
        return self.get_versioned(namespace, service_account).mapping

    def list(self) -> Iterator[IdentityMapping]:
        """
        Iterate over all mappings ordered by (namespace, serviceAccount).

        The iterator is lazy: nothing is read until it is first advanced.
        Call ``list()`` again to restart from the beginning.
        """
        with self._lock:
            entries, _ = self._snapshot()
        for key in sorted(entries):
            yield entries[key].mapping

    def keys(self) -> set[MappingKey]:
        with self._lock:
            entries, _ = self._snapshot()
        return set(entries)

    def delete(
        self,
        namespace: str,
        service_account: str,
        expected_version: int | None = None,
    ) -> bool:
        """
        Delete a mapping. Deleting an absent mapping is a no-op.

        Returns:
            True if an entry was removed
        """
        key = (namespace, service_account)
        with self._lock:
            entries, token = self._snapshot()
            current = entries.get(key)
            if current is None:
                return False
            if expected_version is not None and expected_version != current.version:
                raise ConflictError(
                    mapping_ref(namespace, service_account),
                    message=(
                        f"{mapping_ref(namespace, service_account)} is at version "
                        f"{current.version}, expected {expected_version}"
                    ),
                )
            del entries[key]
            self._commit(entries, token)
        logger.debug(f"Deleted {mapping_ref(namespace, service_account)}")
        return True

    def update(
        self,
        namespace: str,
        service_account: str,
        mutate: Callable[[IdentityMapping], IdentityMapping],
    ) -> int:
        """
        Read-modify-write one mapping under compare-and-swap.

        A ConflictError on the write is retried once with a fresh read; a
        second conflict propagates.

        Raises:
            NotFoundError: If the mapping does not exist
            ConflictError: If the retry also loses the race
        """
        stored = self.get_versioned(namespace, service_account)
        try:
            return self.put(mutate(stored.mapping), expected_version=stored.version)
        except ConflictError:
            logger.info(
                f"Version conflict updating "
                f"{mapping_ref(namespace, service_account)}, retrying with fresh read"
            )

        stored = self.get_versioned(namespace, service_account)
        return self.put(mutate(stored.mapping), expected_version=stored.version)

    def __len__(self) -> int:
        return len(self.keys())
