"""
ServiceAccount handlers - detect drift of IRSA annotations.

Someone editing or removing the role-ARN annotation on a service account
should not have to wait for the next periodic cycle, so a change to any
annotation this operator owns requests an on-demand cycle.

The watch is event-only: kopf keeps no diff base for it, so nothing is
ever written back to the watched service accounts. The last seen IRSA
annotations are held in memory instead.
"""

import logging
from typing import Any

import kopf

from irsa_operator.services.rbac_reconciler import OPERATOR_ANNOTATIONS

logger = logging.getLogger(__name__)


def irsa_annotations(annotations: dict[str, Any] | None) -> dict[str, Any]:
    """The subset of annotations owned by this operator."""
    annotations = annotations or {}
    return {key: annotations[key] for key in OPERATOR_ANNOTATIONS if key in annotations}


class AnnotationWatch:
    """Last seen IRSA annotations per (namespace, name)."""

    def __init__(self):
        self._seen: dict[tuple[str, str], dict[str, Any]] = {}

    def observe(
        self,
        event_type: str | None,
        namespace: str,
        name: str,
        annotations: dict[str, Any] | None,
    ) -> bool:
        """
        Record one watch event.

        The first sighting of an object only seeds the cache; the periodic
        cycle covers whatever state it was found in.

        Returns:
            True if the IRSA annotations changed since the last event
        """
        key = (namespace, name)
        if event_type == "DELETED":
            return bool(self._seen.pop(key, None))

        current = irsa_annotations(annotations)
        previous = self._seen.get(key)
        self._seen[key] = current
        return previous is not None and previous != current

    def __len__(self) -> int:
        return len(self._seen)


_annotation_watch: AnnotationWatch | None = None


def get_annotation_watch() -> AnnotationWatch:
    """Get or create the global annotation watch."""
    global _annotation_watch

    if _annotation_watch is None:
        _annotation_watch = AnnotationWatch()

    return _annotation_watch


@kopf.on.event("v1", "serviceaccounts")
async def service_account_event(
    event: dict[str, Any],
    name: str,
    namespace: str,
    memo: kopf.Memo,
    **_,
) -> None:
    """Request a cycle when IRSA annotations of a service account change."""
    obj = event.get("object") or {}
    annotations = (obj.get("metadata") or {}).get("annotations")
    if not get_annotation_watch().observe(event.get("type"), namespace, name, annotations):
        return

    engine = getattr(memo, "engine", None)
    if engine is None:
        return

    logger.info(
        f"IRSA annotations of ServiceAccount {namespace}/{name} changed, "
        f"requesting reconciliation",
        extra={"namespace": namespace, "resource_ref": f"ServiceAccount/{namespace}/{name}"},
    )
    await engine.request_reconcile(trigger="drift")
