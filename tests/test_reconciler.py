"""End-to-end reconcile passes against an in-memory store and FakeEngine."""

import gzip
import threading
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from api import conditions as c
from api.types import (
    FINALIZER,
    RECONCILE_REQUEST_ANNOTATION,
    ObjectKey,
    TFStateSpec,
)
from cluster.store import EVENT_NORMAL, EVENT_WARNING, StoreNotFoundError
from config import ControllerConfig
from engine.client import InventoryItem, OutputMeta
from engine.errors import EngineError
from reconciler.core import Reconciler, Result
from reconciler.encoding import PLAN_SECRET_KEY
from reconciler.errors import ReconcileError

from conftest import PLAN_ID, REVISION, make_resource


def ready_of(store, key):
    return store.get(key).status.conditions.get(c.READY)


def request_reconcile(store, key, token):
    resource = store.get(key)
    resource.metadata.annotations[RECONCILE_REQUEST_ANNOTATION] = token
    store.update(resource)


class TestFinalizerRegistration:
    """First contact with a new object."""

    def test_adds_finalizer_and_requeues(self, store, engine, reconciler, seeded):
        key = seeded(finalized=False)

        result = reconciler.reconcile_object(key)

        assert result == Result(requeue=True)
        assert FINALIZER in store.get(key).metadata.finalizers
        assert engine.calls == []

    def test_missing_object_is_ignored(self, reconciler):
        assert reconciler.reconcile_object(ObjectKey('default', 'ghost')) == Result()

    def test_suspended_object_is_skipped(self, engine, reconciler, seeded):
        key = seeded(suspend=True)

        assert reconciler.reconcile_object(key) == Result()
        assert engine.calls == []


class TestAutoApprove:
    """approvePlan: auto plans and applies in one pass."""

    def test_plans_and_applies(self, store, engine, reconciler, seeded):
        key = seeded(approvePlan='auto')

        result = reconciler.reconcile_object(key)

        resource = store.get(key)
        ready = resource.status.conditions.get(c.READY)
        assert ready.status == c.TRUE
        assert ready.reason == c.APPLIED_SUCCEEDED
        assert resource.status.last_applied_revision == REVISION
        assert resource.status.plan.pending == ''
        assert resource.status.plan.last_applied == PLAN_ID
        assert resource.status.conditions.is_true(c.APPLY)
        assert result == Result(requeue_after=timedelta(minutes=1))
        assert engine.called('apply') == 1

    def test_new_resource_writes_one_output_and_no_state_secret(self, store, engine, reconciler, seeded):
        engine.outputs = {'hello': OutputMeta(type='string', value='world')}
        key = seeded(approvePlan='auto', writeOutputsToSecret={'name': 'stack-outputs'})

        reconciler.reconcile_object(key)

        resource = store.get(key)
        assert resource.status.conditions.reason_of(c.PLAN) == c.PLANNED_WITH_CHANGES
        assert resource.status.conditions.reason_of(c.APPLY) == c.APPLIED_SUCCEEDED
        assert store.get_secret(ObjectKey('default', 'stack-outputs')) == {'hello': b'world'}
        assert resource.status.available_outputs == ['hello']
        with pytest.raises(StoreNotFoundError):
            store.get_secret(ObjectKey('default', 'tfstate-default-stack'))

    def test_releases_scratch_directory(self, engine, reconciler, seeded):
        key = seeded(approvePlan='auto')

        reconciler.reconcile_object(key)

        assert engine.called('cleanup_dir') == 1

    def test_no_changes_does_not_apply(self, store, engine, reconciler, seeded):
        engine.plan_changes = False
        key = seeded(approvePlan='auto')

        reconciler.reconcile_object(key)

        ready = ready_of(store, key)
        assert ready.status == c.TRUE
        assert ready.reason == c.PLANNED_NO_CHANGES
        assert engine.called('apply') == 0

    def test_interval_not_elapsed_skips_pass(self, store, engine, reconciler, seeded):
        key = seeded(approvePlan='auto')
        reconciler.reconcile_object(key)
        calls = len(engine.calls)

        result = reconciler.reconcile_object(key)

        assert result.requeue_after is not None
        assert timedelta(0) < result.requeue_after <= timedelta(minutes=1)
        assert len(engine.calls) == calls


class TestManualApproval:
    """Empty approvePlan stops at the plan until an operator approves it."""

    def test_stops_with_pending_plan(self, store, engine, reconciler, seeded):
        key = seeded()

        result = reconciler.reconcile_object(key)

        resource = store.get(key)
        ready = resource.status.conditions.get(c.READY)
        assert result == Result()
        assert resource.status.plan.pending == PLAN_ID
        assert ready.status == c.UNKNOWN
        assert ready.reason == c.PLANNED_WITH_CHANGES
        assert f'set approvePlan: "{PLAN_ID}" to approve this plan.' in ready.message
        assert engine.called('apply') == 0
        assert any(e.message.startswith('Planned.') for e in store.events)

    def test_saves_plan_secret(self, store, reconciler, seeded):
        key = seeded()

        reconciler.reconcile_object(key)

        secret = store.get_secret(ObjectKey('default', 'tfplan-default-stack'))
        assert gzip.decompress(secret[PLAN_SECRET_KEY]) == f'Plan for {REVISION}'.encode()
        assert store.get_secret_annotations(ObjectKey('default', 'tfplan-default-stack')) == {'encoding': 'gzip'}

    def test_waits_without_touching_engine(self, engine, reconciler, seeded):
        key = seeded()
        reconciler.reconcile_object(key)
        calls = len(engine.calls)

        assert reconciler.reconcile_object(key) == Result()
        assert len(engine.calls) == calls

    @pytest.mark.parametrize('approval', [PLAN_ID, 'plan-main'])
    def test_approval_applies_pending_plan(self, store, engine, reconciler, seeded, approval):
        key = seeded()
        reconciler.reconcile_object(key)

        resource = store.get(key)
        resource.spec.approve_plan = approval
        store.update(resource)
        reconciler.reconcile_object(key)

        resource = store.get(key)
        assert resource.status.conditions.is_true(c.READY)
        assert resource.status.plan.last_applied == PLAN_ID
        assert engine.called('plan') == 1
        assert any(name == 'load_plan' and args[1] == PLAN_ID for name, args in engine.calls)

    def test_wrong_approval_keeps_waiting(self, store, engine, reconciler, seeded):
        key = seeded()
        reconciler.reconcile_object(key)

        resource = store.get(key)
        resource.spec.approve_plan = 'plan-other-0000000000'
        store.update(resource)
        reconciler.reconcile_object(key)

        assert engine.called('apply') == 0
        assert store.get(key).status.plan.pending == PLAN_ID

    def test_plan_only_never_applies(self, store, engine, reconciler, seeded):
        key = seeded(planOnly=True)

        reconciler.reconcile_object(key)

        ready = ready_of(store, key)
        assert ready.status == c.UNKNOWN
        assert ready.message.endswith('This object is in the plan only mode.')
        assert engine.called('apply') == 0


class TestDriftDetection:
    """Refresh-only plans on an applied, settled object."""

    def _applied(self, store, reconciler, seeded, **spec):
        key = seeded(approvePlan='auto', **spec)
        reconciler.reconcile_object(key)
        return key

    def test_no_drift(self, store, engine, reconciler, seeded):
        key = self._applied(store, reconciler, seeded)
        request_reconcile(store, key, 't1')

        reconciler.reconcile_object(key)

        ready = ready_of(store, key)
        assert ready.status == c.TRUE
        assert ready.reason == c.NO_DRIFT
        assert engine.called('drift_plan') == 1
        assert engine.called('plan') == 1

    def test_drift_is_corrected_with_auto_approve(self, store, engine, reconciler, seeded):
        key = self._applied(store, reconciler, seeded)
        engine.drifted = True
        request_reconcile(store, key, 't1')

        reconciler.reconcile_object(key)

        resource = store.get(key)
        assert resource.status.last_drift_detected_at is not None
        assert resource.status.last_applied_by_drift_detection_at is not None
        assert resource.status.conditions.is_true(c.READY)
        assert engine.called('apply') == 2

    def test_drift_without_approval_fails_pass(self, store, engine, reconciler, seeded):
        key = self._applied(store, reconciler, seeded)
        resource = store.get(key)
        resource.spec.approve_plan = ''
        store.update(resource)
        engine.drifted = True

        result = reconciler.reconcile_object(key)

        resource = store.get(key)
        ready = resource.status.conditions.get(c.READY)
        assert ready.status == c.FALSE
        assert ready.reason == c.DRIFT_DETECTED
        assert engine.drift_output in ready.message
        assert resource.status.reconciliation_failures == 1
        assert result == Result(requeue_after=timedelta(seconds=15))
        assert engine.called('apply') == 1

    def test_reconcile_request_is_recorded(self, store, reconciler, seeded):
        key = self._applied(store, reconciler, seeded)
        request_reconcile(store, key, 't1')

        reconciler.reconcile_object(key)

        assert store.get(key).status.last_handled_reconcile_at == 't1'


class TestDisabledApproval:
    """approvePlan: disable only ever detects drift."""

    def test_force_never_plans_or_applies(self, store, engine, reconciler, seeded):
        engine.drifted = True
        key = seeded(approvePlan='disable', force=True)

        reconciler.reconcile_object(key)

        resource = store.get(key)
        assert c.PLAN not in resource.status.conditions
        assert c.APPLY not in resource.status.conditions
        assert engine.called('plan') == 0
        assert engine.called('apply') == 0
        assert resource.status.conditions.reason_of(c.READY) == c.DRIFT_DETECTED

    def test_no_drift_is_ready(self, store, engine, reconciler, seeded):
        key = seeded(approvePlan='disable')

        reconciler.reconcile_object(key)

        assert ready_of(store, key).reason == c.NO_DRIFT
        assert engine.called('plan') == 0


class TestDependencies:
    def test_waits_for_dependency(self, store, engine, reconciler, seeded):
        seeded(name='a', approvePlan='auto')
        b = seeded(name='b', approvePlan='auto', dependsOn=[{'name': 'a'}])

        result = reconciler.reconcile_object(b)

        ready = ready_of(store, b)
        assert ready.status == c.FALSE
        assert ready.reason == c.DEPENDENCY_NOT_READY
        assert result == Result(requeue_after=timedelta(seconds=15))
        assert store.get(ObjectKey('default', 'a')).metadata.depended_by == ['default/b']
        assert any(e.type == EVENT_NORMAL and e.reason == c.DEPENDENCY_NOT_READY for e in store.events)

    def test_proceeds_once_dependency_ready(self, store, engine, reconciler, seeded):
        a = seeded(name='a', approvePlan='auto')
        b = seeded(name='b', approvePlan='auto', dependsOn=[{'name': 'a'}])
        reconciler.reconcile_object(b)
        reconciler.reconcile_object(a)

        reconciler.reconcile_object(b)

        assert ready_of(store, b).status == c.TRUE

    def test_deletion_blocked_by_dependent(self, store, reconciler, seeded):
        a = seeded(name='a', approvePlan='auto')
        b = seeded(name='b', approvePlan='auto', dependsOn=[{'name': 'a'}])
        reconciler.reconcile_object(a)
        reconciler.reconcile_object(b)
        store.delete(a)

        result = reconciler.reconcile_object(a)

        ready = ready_of(store, a)
        assert ready.reason == c.DELETION_BLOCKED_BY_DEPENDANTS
        assert 'default/b' in ready.message
        assert result == Result(requeue_after=timedelta(seconds=15))

    def test_deleting_dependent_unblocks(self, store, reconciler, seeded):
        a = seeded(name='a', approvePlan='auto')
        b = seeded(name='b', approvePlan='auto', dependsOn=[{'name': 'a'}])
        reconciler.reconcile_object(a)
        reconciler.reconcile_object(b)
        store.delete(a)
        store.delete(b)

        reconciler.reconcile_object(b)
        reconciler.reconcile_object(a)

        for key in (a, b):
            with pytest.raises(StoreNotFoundError):
                store.get(key)


class TestDeletion:
    def test_destroys_then_removes_object(self, store, engine, reconciler, seeded):
        key = seeded(approvePlan='auto', destroyResourcesOnDeletion=True)
        reconciler.reconcile_object(key)
        store.delete(key)

        assert reconciler.reconcile_object(key) == Result()

        assert engine.plan_requests[-1].destroy is True
        assert engine.called('apply') == 2
        assert engine.called('finalize_secrets') == 1
        with pytest.raises(StoreNotFoundError):
            store.get(key)

    def test_nothing_to_destroy_skips_apply(self, store, engine, reconciler, seeded):
        key = seeded(approvePlan='auto', destroyResourcesOnDeletion=True)
        reconciler.reconcile_object(key)
        engine.destroy_plan_created = False
        store.delete(key)

        reconciler.reconcile_object(key)

        assert engine.called('apply') == 1
        with pytest.raises(StoreNotFoundError):
            store.get(key)

    def test_without_destroy_only_cleans_up(self, store, engine, reconciler, seeded):
        key = seeded(approvePlan='auto')
        reconciler.reconcile_object(key)
        uploads = engine.called('upload_and_extract')
        store.delete(key)

        reconciler.reconcile_object(key)

        assert engine.called('upload_and_extract') == uploads
        assert engine.called('finalize_secrets') == 1

    def test_source_gone_skips_destroy(self, store, engine, reconciler, seeded):
        key = seeded(approvePlan='auto', destroyResourcesOnDeletion=True)
        reconciler.reconcile_object(key)
        store.put_source('GitRepository', ObjectKey('default', 'repo'), None)
        store.delete(key)

        reconciler.reconcile_object(key)

        assert engine.called('upload_and_extract') == 1
        with pytest.raises(StoreNotFoundError):
            store.get(key)

    def test_finalize_failure_keeps_finalizer(self, store, engine, reconciler, seeded):
        key = seeded(approvePlan='auto')
        reconciler.reconcile_object(key)
        engine.failures['finalize_secrets'] = EngineError('denied')
        store.delete(key)

        with pytest.raises(ReconcileError, match='error finalizing secrets'):
            reconciler.reconcile_object(key)

        assert FINALIZER in store.get(key).metadata.finalizers


class TestStateLock:
    def test_lock_is_recorded(self, store, engine, reconciler, seeded):
        engine.failures['init'] = EngineError('state locked', lock_identifier='lock-1')
        key = seeded(approvePlan='auto')

        reconciler.reconcile_object(key)

        resource = store.get(key)
        assert resource.status.lock.pending == 'lock-1'
        assert resource.status.conditions.is_true(c.STATE_LOCKED)
        assert resource.status.conditions.reason_of(c.READY) == c.INIT_FAILED

    @pytest.mark.parametrize('directive', [
        TFStateSpec(force_unlock='yes', lock_identifier='lock-1'),
        TFStateSpec(force_unlock='auto'),
    ])
    def test_force_unlock(self, store, engine, reconciler, seeded, directive):
        engine.failures['init'] = EngineError('state locked', lock_identifier='lock-1')
        key = seeded(approvePlan='auto')
        reconciler.reconcile_object(key)
        del engine.failures['init']

        resource = store.get(key)
        resource.spec.tfstate = directive
        store.update(resource)
        reconciler.reconcile_object(key)

        resource = store.get(key)
        assert engine.called('force_unlock') == 1
        assert resource.status.lock.pending == ''
        assert resource.status.lock.last_applied == 'lock-1'
        assert resource.status.conditions.reason_of(c.STATE_LOCKED) == c.FORCE_UNLOCK

    def test_mismatched_lock_id_is_not_unlocked(self, store, engine, reconciler, seeded):
        engine.failures['init'] = EngineError('state locked', lock_identifier='lock-1')
        key = seeded(approvePlan='auto')
        reconciler.reconcile_object(key)
        del engine.failures['init']

        resource = store.get(key)
        resource.spec.tfstate = TFStateSpec(force_unlock='yes', lock_identifier='lock-2')
        store.update(resource)
        reconciler.reconcile_object(key)

        assert engine.called('force_unlock') == 0
        assert store.get(key).status.lock.pending == 'lock-1'


class TestRetries:
    def test_failure_counts_and_records_event(self, store, engine, reconciler, seeded):
        engine.failures['plan'] = EngineError('boom')
        key = seeded(approvePlan='auto')

        result = reconciler.reconcile_object(key)

        resource = store.get(key)
        assert resource.status.reconciliation_failures == 1
        assert resource.status.conditions.reason_of(c.READY) == c.PLAN_FAILED
        assert result == Result(requeue_after=timedelta(seconds=15))
        assert any(e.type == EVENT_WARNING and e.reason == c.RECONCILIATION_FAILED for e in store.events)

    def test_retry_limit_stalls(self, store, engine, reconciler, seeded):
        engine.failures['plan'] = EngineError('boom')
        key = seeded(approvePlan='auto', remediation={'retries': 1})
        reconciler.reconcile_object(key)

        assert reconciler.reconcile_object(key) == Result()

        resource = store.get(key)
        assert resource.status.conditions.reason_of(c.STALLED) == c.RETRY_LIMIT_REACHED
        assert engine.called('plan') == 1

    def test_success_resets_failures(self, store, engine, reconciler, seeded):
        engine.failures['plan'] = EngineError('boom')
        key = seeded(approvePlan='auto')
        reconciler.reconcile_object(key)
        del engine.failures['plan']

        reconciler.reconcile_object(key)

        assert store.get(key).status.reconciliation_failures == 0


class TestSource:
    def test_missing_source_requeues(self, store, engine, reconciler):
        resource = make_resource()
        store.put(resource)

        result = reconciler.reconcile_object(resource.key)

        assert ready_of(store, resource.key).reason == c.ARTIFACT_FAILED
        assert result == Result(requeue_after=timedelta(seconds=15))
        assert engine.calls == []

    def test_cross_namespace_source_denied(self, store, engine, seeded):
        reconciler = Reconciler(store, engine, ControllerConfig(store='memory', no_cross_namespace_refs=True))
        key = seeded(sourceRef={'kind': 'GitRepository', 'name': 'repo', 'namespace': 'other'})

        assert reconciler.reconcile_object(key) == Result()
        assert ready_of(store, key).reason == c.ACCESS_DENIED

    def test_bad_archive_fails_until_retry_limit(self, store, engine, reconciler, seeded):
        engine.failures['upload_and_extract'] = EngineError('gzip: invalid header')
        key = seeded(approvePlan='auto', remediation={'retries': 3})

        for expected in (1, 2, 3):
            result = reconciler.reconcile_object(key)
            resource = store.get(key)
            ready = resource.status.conditions.get(c.READY)
            assert ready.reason == c.ARTIFACT_FAILED
            assert 'gzip: invalid header' in ready.message
            assert resource.status.reconciliation_failures == expected
            assert result == Result(requeue_after=timedelta(seconds=15))

        assert reconciler.reconcile_object(key) == Result()
        assert store.get(key).status.conditions.reason_of(c.STALLED) == c.RETRY_LIMIT_REACHED
        assert engine.called('upload_and_extract') == 3
        assert engine.called('plan') == 0


class TestBreakTheGlass:
    def test_not_allowed(self, store, engine, reconciler, seeded):
        key = seeded(approvePlan='auto', breakTheGlass=True)

        reconciler.reconcile_object(key)

        ready = ready_of(store, key)
        assert ready.message == 'Breaking the glass is not allowed'
        assert engine.called('plan') == 0

    def test_session_ends_the_pass(self, store, engine, config, seeded):
        config.allow_break_the_glass = True
        reconciler = Reconciler(store, engine, config)
        reconciler.break_the_glass_poll = 0
        key = seeded(approvePlan='auto', breakTheGlass=True)

        reconciler.reconcile_object(key)

        assert engine.called('start_break_the_glass_session') == 1
        assert ready_of(store, key).message == 'Initializing'
        assert engine.called('plan') == 0


class TestCancellation:
    def test_cancelled_pass_is_not_a_failure(self, store, engine, reconciler, seeded):
        key = seeded(approvePlan='auto')
        cancelled = threading.Event()
        cancelled.set()

        assert reconciler.reconcile_object(key, cancelled) == Result()

        assert store.get(key).status.reconciliation_failures == 0
        assert engine.calls == []


class TestOutputsAndHealth:
    def _resource(self, seeded, **spec):
        return seeded(
            approvePlan='auto',
            writeOutputsToSecret={'name': 'stack-outputs'},
            healthChecks=[{'name': 'web', 'type': 'http', 'url': 'http://${{ .host }}/health'}],
            **spec,
        )

    def test_writes_outputs_and_checks_health(self, store, engine, config, seeded):
        session = MagicMock()
        session.get.return_value = MagicMock(status_code=200)
        reconciler = Reconciler(store, engine, config, health_session=session)
        engine.outputs = {'host': OutputMeta(type='string', value='10.0.0.1')}
        key = self._resource(seeded)

        reconciler.reconcile_object(key)

        resource = store.get(key)
        assert store.get_secret(ObjectKey('default', 'stack-outputs')) == {'host': b'10.0.0.1'}
        assert resource.status.available_outputs == ['host']
        assert resource.status.conditions.is_true(c.HEALTH_CHECK)
        session.get.assert_called_once_with('http://10.0.0.1/health', timeout=20.0)

    def test_failed_health_check_fails_pass(self, store, engine, config, seeded):
        session = MagicMock()
        session.get.return_value = MagicMock(status_code=500, text='down')
        reconciler = Reconciler(store, engine, config, health_session=session)
        engine.outputs = {'host': OutputMeta(type='string', value='10.0.0.1')}
        key = self._resource(seeded)

        reconciler.reconcile_object(key)

        resource = store.get(key)
        assert resource.status.conditions.reason_of(c.HEALTH_CHECK) == c.HEALTH_CHECKS_FAILED
        assert resource.status.reconciliation_failures == 1

    def test_first_failing_check_stops_the_rest(self, store, engine, config, seeded):
        session = MagicMock()
        session.get.return_value = MagicMock(status_code=503, text='unavailable')
        reconciler = Reconciler(store, engine, config, health_session=session)
        engine.outputs = {'host': OutputMeta(type='string', value='10.0.0.1')}
        key = seeded(
            approvePlan='auto',
            writeOutputsToSecret={'name': 'stack-outputs'},
            healthChecks=[
                {'name': 'web', 'type': 'http', 'url': 'http://${{ .host }}/health'},
                {'name': 'api', 'type': 'http', 'url': 'http://${{ .host }}/api'},
            ],
        )

        reconciler.reconcile_object(key)

        session.get.assert_called_once_with('http://10.0.0.1/health', timeout=20.0)
        assert store.get(key).status.conditions.reason_of(c.HEALTH_CHECK) == c.HEALTH_CHECKS_FAILED


class TestInventory:
    def test_inventory_recorded_after_apply(self, store, engine, reconciler, seeded):
        engine.inventory = [InventoryItem('a', 'null_resource', 'id-1')]
        key = seeded(approvePlan='auto', enableInventory=True)

        reconciler.reconcile_object(key)

        inventory = store.get(key).status.inventory
        assert [(e.name, e.identifier) for e in inventory] == [('a', 'id-1')]

    def test_inventory_dropped_when_disabled(self, store, engine, reconciler, seeded):
        key = seeded(approvePlan='auto')

        reconciler.reconcile_object(key)

        assert store.get(key).status.inventory is None
