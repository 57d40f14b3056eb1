"""
Reconciliation engine.

One cycle brings both backends in line with a desired-state document:

1. New identity mappings are recorded in the store.
2. RBAC is reconciled per namespace (Role, RoleBindings, ServiceAccounts).
3. Trust policies are reconciled per IAM role. A role waits while RBAC of
   any namespace it serves failed this cycle.
4. Store bookkeeping: changed mappings are committed and removed mappings
   deleted once both backends reflect the change.

Namespaces and roles are independent units processed by a bounded worker
pool. Each unit moves through the retry state machine; every failure emits
exactly one failed ReconciliationResult.
"""

import asyncio
import hashlib
import json
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from irsa_operator.constants import IAM_UNIT_PREFIX, RBAC_UNIT_PREFIX
from irsa_operator.errors import (
    AwsIamError,
    ConfigurationError,
    KubernetesAPIError,
    NotFoundError,
    OperatorError,
    ReconciliationError,
    error_tag,
)
from irsa_operator.models import (
    DesiredState,
    IdentityMapping,
    MappingKey,
    Outcome,
    PatchAction,
    ReconciliationResult,
    TrustCondition,
    normalize_issuer,
)
from irsa_operator.observability.audit import AuditTrail
from irsa_operator.observability.logging import OperatorLogger
from irsa_operator.observability.metrics import metrics_collector
from irsa_operator.services.rbac_reconciler import RbacPolicyReconciler
from irsa_operator.services.state_machine import ResourceStateTracker, RetryPolicy
from irsa_operator.services.trust_policy import TrustPolicySynthesizer
from irsa_operator.store import IdentityMappingStore, ResourceStateStore
from irsa_operator.utils.circuit_breaker import BackendCircuitBreaker

KUBERNETES = "kubernetes"
IAM = "iam"


def _digest(payload: Any) -> str:
    return hashlib.sha256(
        json.dumps(payload, sort_keys=True, default=str).encode()
    ).hexdigest()


def _as_operator_error(error: Exception, resource: str) -> OperatorError:
    if isinstance(error, OperatorError):
        return error
    wrapped = ReconciliationError(
        f"Unexpected {type(error).__name__}: {error}", resource=resource
    )
    wrapped.cause = error
    return wrapped


class _ReportedFailure(Exception):
    """A unit failure whose result has already been emitted."""

    def __init__(self, error: OperatorError):
        super().__init__(str(error))
        self.error = error


@dataclass
class CycleReport:
    """Results emitted by one reconciliation cycle."""

    cycle_id: str
    trigger: str
    dry_run: bool = False
    results: list[ReconciliationResult] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    @property
    def failed(self) -> list[ReconciliationResult]:
        return [r for r in self.results if r.outcome == Outcome.FAILED]

    @property
    def changed(self) -> list[ReconciliationResult]:
        return [r for r in self.results if r.changed]

    @property
    def skipped(self) -> list[ReconciliationResult]:
        return [r for r in self.results if r.outcome == Outcome.SKIPPED]

    @property
    def succeeded(self) -> bool:
        return not self.failed

    def for_resource(self, prefix: str) -> list[ReconciliationResult]:
        return [r for r in self.results if r.resource_ref.startswith(prefix)]


@dataclass
class _CycleContext:
    """Working set of a single cycle."""

    report: CycleReport
    desired: dict[MappingKey, IdentityMapping]
    stored: dict[MappingKey, IdentityMapping]
    intents_by_namespace: dict[str, list]
    granted: dict[MappingKey, IdentityMapping]
    rbac_ok: set[str] = field(default_factory=set)
    iam_ok: set[str] = field(default_factory=set)
    providers: asyncio.Task | None = None


class ReconciliationEngine:
    """Orchestrates RBAC and trust-policy reconciliation across both backends."""

    def __init__(
        self,
        kubernetes,
        iam,
        store: IdentityMappingStore,
        issuer_url: str,
        *,
        rbac: RbacPolicyReconciler | None = None,
        trust: TrustPolicySynthesizer | None = None,
        tracker: ResourceStateTracker | None = None,
        state_store: ResourceStateStore | None = None,
        audit: AuditTrail | None = None,
        breakers: dict[str, BackendCircuitBreaker] | None = None,
        max_workers: int = 8,
        call_timeout: float = 30.0,
        dry_run: bool = False,
        require_rbac_mandate: bool = True,
    ):
        """
        Initialize the engine.

        Args:
            kubernetes: KubernetesGateway (or an object with the same methods)
            iam: IamGateway (or an object with the same methods)
            store: Identity mapping store
            issuer_url: OIDC issuer URL of the cluster
            rbac: RBAC planner, additive merge by default
            trust: Trust-policy synthesizer
            tracker: Retry state machine
            state_store: Persistence for the retry state machine
            audit: Audit trail receiving every emitted result
            breakers: Circuit breakers keyed by backend ("kubernetes", "iam")
            max_workers: Maximum number of units processed concurrently
            call_timeout: Timeout in seconds for each backend call
            dry_run: Plan only, never write
            require_rbac_mandate: Only trust mappings that have an access intent
        """
        self.kubernetes = kubernetes
        self.iam = iam
        self.store = store
        self.issuer_url = issuer_url
        self.rbac = rbac or RbacPolicyReconciler()
        self.trust = trust or TrustPolicySynthesizer()
        self.tracker = tracker or ResourceStateTracker()
        self.state_store = state_store
        self.audit = audit or AuditTrail()
        self.breakers = breakers or {}
        self.call_timeout = call_timeout
        self.dry_run = dry_run
        self.require_rbac_mandate = require_rbac_mandate
        self.logger = OperatorLogger(__name__)

        self._workers = asyncio.Semaphore(max_workers)
        self._cycle_lock = asyncio.Lock()
        self._namespace_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._last_desired: DesiredState | None = None
        self._request_pending = False
        self.last_report: CycleReport | None = None

    @classmethod
    def from_settings(cls, settings, k8s_client=None) -> "ReconciliationEngine":
        """
        Build an engine with real backends from operator settings.

        Raises:
            ConfigurationError: If the OIDC issuer URL is missing
        """
        from irsa_operator.store import (
            ConfigMapIdentityMappingStore,
            ConfigMapResourceStateStore,
        )
        from irsa_operator.utils.aws_iam import IamGateway
        from irsa_operator.utils.kubernetes import KubernetesGateway

        if not settings.oidc_issuer_url:
            raise ConfigurationError(
                "OIDC_ISSUER_URL is not set",
                user_action="Set OIDC_ISSUER_URL to the cluster's service account issuer",
            )

        kubernetes = KubernetesGateway(k8s_client)
        iam = IamGateway(
            region=settings.aws_region,
            profile=settings.aws_profile,
            read_timeout=settings.call_timeout_seconds,
        )
        if settings.store_backend == "configmap":
            store = ConfigMapIdentityMappingStore(kubernetes, settings.operator_namespace)
            state_store = ConfigMapResourceStateStore(
                kubernetes, settings.operator_namespace
            )
        else:
            store = IdentityMappingStore()
            state_store = ResourceStateStore()

        breakers = {
            backend: BackendCircuitBreaker(
                backend,
                fail_max=settings.circuit_breaker_fail_max,
                timeout_duration=settings.circuit_breaker_reset_seconds,
            )
            for backend in (KUBERNETES, IAM)
        }
        return cls(
            kubernetes,
            iam,
            store,
            settings.oidc_issuer_url,
            rbac=RbacPolicyReconciler(
                merge_policy=settings.merge_policy,
                manage_service_accounts=settings.manage_service_accounts,
            ),
            tracker=ResourceStateTracker(
                RetryPolicy(
                    base=settings.backoff_base_seconds,
                    cap=settings.backoff_cap_seconds,
                    max_attempts=settings.max_attempts,
                )
            ),
            state_store=state_store,
            audit=AuditTrail(settings.audit_retention),
            breakers=breakers,
            max_workers=settings.max_workers,
            call_timeout=settings.call_timeout_seconds,
            dry_run=settings.dry_run,
            require_rbac_mandate=settings.require_rbac_mandate,
        )

    # Backend calls

    async def _call(self, backend: str, resource: str, func: Callable, *args) -> Any:
        """
        Run a blocking backend call in a thread with a timeout.

        Raises:
            KubernetesAPIError | AwsIamError: On timeout, tagged ExternalApiError
            OperatorError: Whatever the gateway raises
        """

        async def invoke():
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args), timeout=self.call_timeout
            )

        breaker = self.breakers.get(backend)
        try:
            if breaker is None:
                return await invoke()
            return await breaker.call(invoke)
        except TimeoutError as e:
            message = f"call timed out after {self.call_timeout}s"
            if backend == IAM:
                raise AwsIamError(message, code="Timeout", resource=resource) from e
            raise KubernetesAPIError(message, reason="Timeout", resource=resource) from e

    # Results

    def _emit(
        self,
        report: CycleReport,
        resource_ref: str,
        action: PatchAction,
        outcome: Outcome,
        error: OperatorError | None = None,
        attempt: int = 0,
        message: str | None = None,
    ) -> ReconciliationResult:
        result = ReconciliationResult(
            resource_ref=resource_ref,
            action=action,
            outcome=outcome,
            error=str(error) if error else None,
            error_type=error_tag(error) if error else None,
            attempt=attempt,
            message=message,
        )
        report.results.append(self.audit.append(result))
        return result

    # State persistence

    async def restore_state(self) -> None:
        """Load persisted retry state so attempt counters survive restarts."""
        if self.state_store is None:
            return
        states = await self._call(
            KUBERNETES, "ResourceStates", self.state_store.load
        )
        self.tracker = ResourceStateTracker.from_snapshot(
            states,
            policy=self.tracker.policy,
            clock=self.tracker.clock,
            rng=self.tracker.rng,
        )
        self.logger.info(f"Restored retry state for {len(states)} units")

    async def _persist_state(self) -> None:
        if self.state_store is None or self.dry_run:
            return
        try:
            await self._call(
                KUBERNETES, "ResourceStates", self.state_store.save, self.tracker.snapshot()
            )
        except OperatorError as e:
            # Retry bookkeeping only; the next cycle saves again
            self.logger.warning(f"Failed to persist resource states: {e}")

    # Entry points

    async def request_reconcile(self, trigger: str = "on-demand") -> CycleReport | None:
        """
        Run an extra cycle against the last desired state.

        Requests arriving while one is already queued are coalesced into it.

        Returns:
            The cycle report, or None if coalesced or no desired state is known yet
        """
        if self._last_desired is None:
            self.logger.debug(f"Ignoring {trigger} request before the first cycle")
            return None
        if self._request_pending:
            return None
        self._request_pending = True
        return await self.run_cycle(self._last_desired, trigger=trigger)

    async def run_cycle(self, desired: DesiredState, trigger: str = "periodic") -> CycleReport:
        """
        Reconcile both backends against a desired state.

        Cycles are serialized. Per-resource failures are reported as results
        and never raise; only cancellation propagates.
        """
        async with self._cycle_lock:
            self._request_pending = False
            self._last_desired = desired
            cycle_id = self.logger.log_cycle_start(trigger)
            report = CycleReport(cycle_id=cycle_id, trigger=trigger, dry_run=self.dry_run)
            start_time = time.time()

            try:
                async with metrics_collector.track_cycle(trigger):
                    await self._run(desired, report)
            except asyncio.CancelledError:
                self.logger.warning("Reconciliation cycle cancelled")
                raise
            except Exception as e:
                self.logger.log_cycle_error(trigger, e, time.time() - start_time)
                raise
            finally:
                report.finished_at = datetime.now(UTC)
                metrics_collector.update_phase_counts(self.tracker.phase_counts())
                await self._persist_state()

            self.last_report = report
            if report.succeeded:
                metrics_collector.mark_cycle_success()
            self.logger.log_cycle_success(
                trigger,
                time.time() - start_time,
                changed=len(report.changed),
                failed=len(report.failed),
            )
            return report

    async def _run(self, desired_state: DesiredState, report: CycleReport) -> None:
        desired = desired_state.mappings_by_key()
        intents_by_namespace = desired_state.intents_by_namespace()

        try:
            stored_list = await self._call(
                KUBERNETES, "IdentityMappingStore", lambda: list(self.store.list())
            )
        except OperatorError as e:
            self._emit(
                report, "IdentityMappingStore", PatchAction.NOOP, Outcome.FAILED, error=e
            )
            return
        stored = {m.key: m for m in stored_list}

        if not self.dry_run:
            await self._register_new_mappings(report, desired, stored)

        # Mappings the store refused stay out of this cycle
        effective = {
            key: m for key, m in desired.items() if key in stored or self.dry_run
        }
        intent_keys = {i.key for i in desired_state.access_intents}
        granted = {
            key: m
            for key, m in effective.items()
            if not self.require_rbac_mandate or key in intent_keys
        }
        ctx = _CycleContext(
            report=report,
            desired=effective,
            stored=stored,
            intents_by_namespace=intents_by_namespace,
            granted=granted,
        )

        # Phase 1: RBAC
        namespaces = (
            set(intents_by_namespace)
            | {ns for ns, _ in effective}
            | {ns for ns, _ in stored}
        )
        try:
            namespaces |= await self._call(
                KUBERNETES, "Namespaces", self.kubernetes.list_managed_namespaces
            )
        except OperatorError as e:
            self._emit(report, "Namespaces", PatchAction.NOOP, Outcome.FAILED, error=e)

        await asyncio.gather(
            *(self._reconcile_namespace(ctx, ns) for ns in sorted(namespaces))
        )

        # Phase 2: IAM trust
        roles = {m.role_arn for m in effective.values()} | {
            m.role_arn for m in stored.values()
        }
        await asyncio.gather(*(self._reconcile_role(ctx, arn) for arn in sorted(roles)))

        if self.dry_run:
            return

        # Phase 3: bookkeeping
        await self._commit_mappings(ctx)

        unit_keys = {f"{RBAC_UNIT_PREFIX}{ns}" for ns in namespaces} | {
            f"{IAM_UNIT_PREFIX}{arn}" for arn in roles
        }
        for key in self.tracker.keys() - unit_keys:
            self.tracker.forget(key)
        for namespace in set(self._namespace_locks) - namespaces:
            if not self._namespace_locks[namespace].locked():
                del self._namespace_locks[namespace]

    async def _run_unit(
        self,
        report: CycleReport,
        key: str,
        resource_ref: str,
        fingerprint: str,
        work: Callable[[int], Awaitable[None]],
    ) -> bool:
        """
        Run one unit through the state machine.

        Returns:
            True if the unit is in sync (or was planned, in dry-run mode)
        """
        async with self._workers:
            if not self.dry_run:
                allowed, reason = self.tracker.should_attempt(key, fingerprint)
                if not allowed:
                    self._emit(
                        report,
                        resource_ref,
                        PatchAction.NOOP,
                        Outcome.SKIPPED,
                        attempt=self.tracker.get(key).attempts,
                        message=reason,
                    )
                    return False
                self.tracker.mark_applying(key)

            attempt = 1 if self.dry_run else self.tracker.get(key).attempts + 1
            try:
                await work(attempt)
            except asyncio.CancelledError:
                if not self.dry_run:
                    self.tracker.mark_pending(key)
                raise
            except _ReportedFailure as failure:
                error = failure.error
            except Exception as e:
                error = _as_operator_error(e, resource_ref)
                self._emit(
                    report,
                    resource_ref,
                    PatchAction.NOOP,
                    Outcome.FAILED,
                    error=error,
                    attempt=attempt,
                )
            else:
                if not self.dry_run:
                    self.tracker.mark_applied(key)
                return True

            self.logger.warning(
                f"{resource_ref} failed on attempt {attempt}: {error}",
                resource_ref=resource_ref,
                error_type=error_tag(error),
                attempt=attempt,
            )
            if not self.dry_run:
                self.tracker.mark_failed(key, str(error), error.retryable)
            return False

    # Phase 0

    async def _register_new_mappings(
        self,
        report: CycleReport,
        desired: dict[MappingKey, IdentityMapping],
        stored: dict[MappingKey, IdentityMapping],
    ) -> None:
        now = datetime.now(UTC)
        for key in sorted(desired.keys() - stored.keys()):
            mapping = desired[key].model_copy(
                update={"created_at": now, "last_reconciled_at": None, "fingerprint": None}
            )
            try:
                await self._call(KUBERNETES, mapping.ref, self.store.put, mapping, 0)
            except OperatorError as e:
                self._emit(report, mapping.ref, PatchAction.CREATE, Outcome.FAILED, error=e)
                continue
            stored[key] = mapping
            self._emit(report, mapping.ref, PatchAction.CREATE, Outcome.APPLIED)

    # Phase 1

    def _rbac_fingerprint(self, ctx: _CycleContext, namespace: str) -> str:
        intents = sorted(
            ctx.intents_by_namespace.get(namespace, []), key=lambda i: i.key
        )
        mappings = sorted(
            (m for m in ctx.desired.values() if m.namespace == namespace),
            key=lambda m: m.key,
        )
        return _digest(
            {
                "intents": [i.model_dump(mode="json", by_alias=True) for i in intents],
                "mappings": [[*m.key, m.role_arn, m.audience] for m in mappings],
                "mergePolicy": self.rbac.merge_policy,
                "serviceAccounts": self.rbac.manage_service_accounts,
            }
        )

    async def _reconcile_namespace(self, ctx: _CycleContext, namespace: str) -> None:
        intents = ctx.intents_by_namespace.get(namespace, [])
        mappings = [m for m in ctx.desired.values() if m.namespace == namespace]
        report = ctx.report

        async def work(attempt: int) -> None:
            async with self._namespace_locks[namespace]:
                snapshot = await self._call(
                    KUBERNETES,
                    f"Namespace/{namespace}",
                    self.kubernetes.snapshot_namespace,
                    namespace,
                )
                plan = self.rbac.plan(namespace, intents, mappings, snapshot)
                for op in plan.skipped:
                    self._emit(
                        report,
                        op.resource_ref,
                        op.action,
                        Outcome.SKIPPED,
                        attempt=attempt,
                        message=op.reason,
                    )

                for index, op in enumerate(plan.operations):
                    if self.dry_run:
                        self._emit(
                            report,
                            op.resource_ref,
                            op.action,
                            Outcome.SKIPPED,
                            message="dry-run",
                        )
                        continue
                    try:
                        await self._call(
                            KUBERNETES, op.resource_ref, self.kubernetes.apply, op
                        )
                    except Exception as e:
                        error = _as_operator_error(e, op.resource_ref)
                        self._emit(
                            report,
                            op.resource_ref,
                            op.action,
                            Outcome.FAILED,
                            error=error,
                            attempt=attempt,
                        )
                        for remaining in plan.operations[index + 1 :]:
                            self._emit(
                                report,
                                remaining.resource_ref,
                                remaining.action,
                                Outcome.SKIPPED,
                                attempt=attempt,
                                message=f"not attempted after {op.resource_ref} failed",
                            )
                        raise _ReportedFailure(error) from e
                    self._emit(
                        report, op.resource_ref, op.action, Outcome.APPLIED, attempt=attempt
                    )

        ok = await self._run_unit(
            report,
            f"{RBAC_UNIT_PREFIX}{namespace}",
            f"Namespace/{namespace}",
            self._rbac_fingerprint(ctx, namespace),
            work,
        )
        if ok:
            ctx.rbac_ok.add(namespace)

    # Phase 2

    async def _registered_providers(self, ctx: _CycleContext) -> list[str]:
        # One lookup per cycle, shared by every role unit
        if ctx.providers is None:
            ctx.providers = asyncio.ensure_future(
                self._call(IAM, "OpenIDConnectProviders", self.iam.list_oidc_provider_arns)
            )
        return await asyncio.shield(ctx.providers)

    def _iam_fingerprint(self, role_arn: str, contributing: list[IdentityMapping]) -> str:
        return _digest(
            {
                "role": role_arn,
                "issuer": normalize_issuer(self.issuer_url),
                "conditions": sorted(
                    TrustCondition.from_mapping(m, self.issuer_url).fingerprint()
                    for m in contributing
                ),
            }
        )

    async def _reconcile_role(self, ctx: _CycleContext, role_arn: str) -> None:
        report = ctx.report
        resource_ref = f"IAMRole/{role_arn}"
        contributing = sorted(
            (m for m in ctx.granted.values() if m.role_arn == role_arn),
            key=lambda m: m.key,
        )
        affected = {m.namespace for m in ctx.desired.values() if m.role_arn == role_arn}
        affected |= {m.namespace for m in ctx.stored.values() if m.role_arn == role_arn}
        blocked = sorted(affected - ctx.rbac_ok)
        if blocked:
            self._emit(
                report,
                resource_ref,
                PatchAction.NOOP,
                Outcome.SKIPPED,
                message=f"waiting for RBAC in namespaces: {', '.join(blocked)}",
            )
            return

        async def work(attempt: int) -> None:
            try:
                observed = await self._call(
                    IAM, resource_ref, self.iam.get_trust_policy, role_arn
                )
            except NotFoundError:
                if not contributing:
                    # Nothing to revoke on a role that no longer exists
                    return
                raise

            self.trust.validate(observed, role_arn)
            if contributing:
                provider_arn = self.trust.provider_arn(role_arn, self.issuer_url)
                registered = await self._registered_providers(ctx)
                self.trust.verify_provider(provider_arn, registered, role_arn)

            expected = self.trust.render_document(
                role_arn, observed, contributing, self.issuer_url
            )
            delta = self.trust.diff(expected, observed)
            if delta.is_empty:
                return

            metrics_collector.record_trust_drift("missing", len(delta.missing_statements))
            metrics_collector.record_trust_drift("extra", len(delta.extra_statements))
            metrics_collector.record_trust_drift(
                "condition_mismatch", len(delta.condition_mismatches)
            )
            action = PatchAction.UPDATE if contributing else PatchAction.DELETE
            if self.dry_run:
                self._emit(
                    report,
                    resource_ref,
                    action,
                    Outcome.SKIPPED,
                    message=f"dry-run: {delta.summary()}",
                )
                return

            try:
                await self._call(
                    IAM, resource_ref, self.iam.update_trust_policy, role_arn, expected
                )
            except Exception as e:
                error = _as_operator_error(e, resource_ref)
                self._emit(
                    report, resource_ref, action, Outcome.FAILED, error=error, attempt=attempt
                )
                raise _ReportedFailure(error) from e
            self._emit(
                report,
                resource_ref,
                action,
                Outcome.APPLIED,
                attempt=attempt,
                message=delta.summary(),
            )

        ok = await self._run_unit(
            report,
            f"{IAM_UNIT_PREFIX}{role_arn}",
            resource_ref,
            self._iam_fingerprint(role_arn, contributing),
            work,
        )
        if ok:
            ctx.iam_ok.add(role_arn)

    # Phase 3

    async def _commit_mappings(self, ctx: _CycleContext) -> None:
        now = datetime.now(UTC)
        report = ctx.report

        for key, stored in sorted(ctx.stored.items()):
            namespace, service_account = key
            desired = ctx.desired.get(key)

            if desired is None:
                if namespace in ctx.rbac_ok and stored.role_arn in ctx.iam_ok:
                    try:
                        await self._call(
                            KUBERNETES, stored.ref, self.store.delete, namespace, service_account
                        )
                    except OperatorError as e:
                        self._emit(
                            report, stored.ref, PatchAction.DELETE, Outcome.FAILED, error=e
                        )
                        continue
                    self._emit(report, stored.ref, PatchAction.DELETE, Outcome.APPLIED)
                continue

            roles = {stored.role_arn, desired.role_arn}
            if namespace not in ctx.rbac_ok or not roles <= ctx.iam_ok:
                continue

            fingerprint = None
            if key in ctx.granted:
                fingerprint = TrustCondition.from_mapping(
                    desired, self.issuer_url
                ).fingerprint()
            changed = not stored.declaration_equals(desired)
            if (
                not changed
                and stored.fingerprint == fingerprint
                and stored.last_reconciled_at is not None
            ):
                continue

            def mutate(current: IdentityMapping, desired=desired, fingerprint=fingerprint):
                return desired.model_copy(
                    update={
                        "created_at": current.created_at,
                        "last_reconciled_at": now,
                        "fingerprint": fingerprint,
                    }
                )

            try:
                await self._call(
                    KUBERNETES,
                    stored.ref,
                    self.store.update,
                    namespace,
                    service_account,
                    mutate,
                )
            except OperatorError as e:
                self._emit(report, stored.ref, PatchAction.UPDATE, Outcome.FAILED, error=e)
                continue
            if changed:
                self._emit(report, stored.ref, PatchAction.UPDATE, Outcome.APPLIED)

        try:
            count = await self._call(KUBERNETES, "IdentityMappingStore", len, self.store)
        except OperatorError as e:
            self.logger.warning(f"Could not count stored mappings: {e}")
            return
        metrics_collector.update_mapping_count(count)
