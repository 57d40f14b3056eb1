"""
Desired-state handlers - drive reconciliation cycles.

The desired state is a YAML or JSON document held either in a ConfigMap in
the operator namespace labelled ``irsa-operator.io/desired-state`` or in a
file named by DESIRED_STATE_PATH. A change to the ConfigMap starts a cycle
right away; a timer repeats the cycle at the configured interval so drift
in either backend is corrected.
"""

import asyncio
import logging
from typing import Any

import kopf

from irsa_operator.constants import DESIRED_STATE_DATA_KEY, DESIRED_STATE_LABEL_KEY
from irsa_operator.errors import OperatorError, ValidationError
from irsa_operator.models import DesiredState, load_desired_state, load_desired_state_file
from irsa_operator.services import CycleReport, ReconciliationEngine
from irsa_operator.settings import settings as operator_settings

logger = logging.getLogger(__name__)

DESIRED_STATE_LABELS = {DESIRED_STATE_LABEL_KEY: kopf.PRESENT}


def desired_state_from_config_map(body: dict[str, Any]) -> DesiredState:
    """
    Parse the desired-state document carried by a ConfigMap.

    Raises:
        ValidationError: If the entry is missing or invalid
    """
    metadata = body.get("metadata") or {}
    resource = f"ConfigMap/{metadata.get('namespace')}/{metadata.get('name')}"
    text = (body.get("data") or {}).get(DESIRED_STATE_DATA_KEY)
    if text is None:
        raise ValidationError(
            f"no '{DESIRED_STATE_DATA_KEY}' entry",
            resource=resource,
            user_action=f"Put the desired-state document under data.{DESIRED_STATE_DATA_KEY}",
        )
    return load_desired_state(text)


async def run_reconciliation(
    engine: ReconciliationEngine, desired: DesiredState, trigger: str
) -> CycleReport:
    """
    Run one cycle, translating operator errors for kopf.

    Raises:
        kopf.TemporaryError | kopf.PermanentError: If the cycle aborts
    """
    try:
        report = await engine.run_cycle(desired, trigger=trigger)
    except OperatorError as e:
        raise e.as_kopf_error() from e

    if report.failed:
        logger.warning(
            f"Cycle {report.cycle_id} finished with {len(report.failed)} failed results"
        )
    return report


async def _handle_config_map(
    body: dict[str, Any], namespace: str, memo: kopf.Memo, trigger: str
) -> None:
    if operator_settings.desired_state_path:
        logger.debug("Desired state is read from a file, ignoring ConfigMap change")
        return
    if namespace != operator_settings.operator_namespace:
        logger.warning(
            f"Ignoring desired-state ConfigMap outside the operator namespace "
            f"({namespace} != {operator_settings.operator_namespace})"
        )
        return

    try:
        desired = desired_state_from_config_map(body)
    except ValidationError as e:
        raise e.as_kopf_error() from e

    await run_reconciliation(memo.engine, desired, trigger)


@kopf.on.create("v1", "configmaps", labels=DESIRED_STATE_LABELS)
@kopf.on.update("v1", "configmaps", labels=DESIRED_STATE_LABELS)
@kopf.on.resume("v1", "configmaps", labels=DESIRED_STATE_LABELS)
async def desired_state_changed(
    body: kopf.Body, namespace: str, memo: kopf.Memo, **_
) -> None:
    """Reconcile as soon as the desired-state ConfigMap appears or changes."""
    await _handle_config_map(dict(body), namespace, memo, trigger="desired-state")


@kopf.timer(
    "v1",
    "configmaps",
    labels=DESIRED_STATE_LABELS,
    interval=operator_settings.cycle_interval_seconds,
    initial_delay=operator_settings.cycle_interval_seconds,
)
async def periodic_reconciliation(
    body: kopf.Body, namespace: str, memo: kopf.Memo, **_
) -> None:
    """Periodic cycle correcting drift in both backends."""
    await _handle_config_map(dict(body), namespace, memo, trigger="periodic")


async def run_file_cycles(engine: ReconciliationEngine, path: str, interval: float) -> None:
    """
    Periodic cycles against a desired-state file.

    Runs until cancelled. A broken document or an aborted cycle is logged
    and retried on the next interval.
    """
    trigger = "startup"
    while True:
        try:
            desired = load_desired_state_file(path)
            await run_reconciliation(engine, desired, trigger)
        except ValidationError as e:
            logger.error(f"Desired-state file {path} is invalid: {e}")
        except (kopf.TemporaryError, kopf.PermanentError) as e:
            logger.error(f"Reconciliation cycle aborted: {e}")
        trigger = "periodic"
        await asyncio.sleep(interval)
