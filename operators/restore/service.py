# ============================================================================
# RESTORE SERVICE - PHASE HANDLERS
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Core - Multi-phase restore of director deployments
# PURPOSE: Issue, poll and finalize every restore phase, resumable on any replica
# CREATED: 17 OCT 2026
# ============================================================================
"""
Restore Service

Restores a director-managed deployment from a disk snapshot:

    in_queue
      -> start_restore: discover deployment + disks, write restoreMetadata
    trigger_BOSH_STOP         -> in_progress_BOSH_STOP
    trigger_CREATE_DISK       -> in_progress_CREATE_DISK      (per instance)
    trigger_ATTACH_DISK       -> in_progress_ATTACH_DISK      (per instance)
    trigger_PUT_FILE          -> (synchronous ssh, per instance)
    trigger_BASEBACKUP_ERRAND -> in_progress_BASEBACKUP_ERRAND
    trigger_PITR_ERRAND       -> in_progress_PITR_ERRAND      (only with time_stamp)
    trigger_BOSH_START        -> in_progress_BOSH_START
    trigger_POST_BOSH_START_ERRAND -> in_progress_POST_BOSH_START_ERRAND
      -> succeeded

Trigger handlers run in the RestoreOperator, poll handlers in the
RestoreStatusPoller. Both are looked up by RestorePhase in tables built
at construction; a phase without both entries is a construction error.

Resumption:
    A trigger whose task id (or every per-instance sub-task id) is
    already recorded in stateResults issues nothing and only advances to
    in_progress. Fan-out phases record each instance's sub-task, so a
    partial issue resumes with the missing instances only.

Finalization:
    Terminal outcome is written to the resource and to the restore
    metadata file. A file whose last_restore_guid already names this
    restore is not written again.
"""

import asyncio
import json
import logging
import shlex
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from core.config import RestoreDefaults, get_defaults
from core.contracts import (
    DirectorTaskState,
    OperationType,
    ResourceGroup,
    ResourceState,
    ResourceType,
    RestorePhase,
    TaskOutcome,
)
from core.errors import InvalidInput, NotFound, TaskFailed, error_payload
from core.interfaces import CloudDiskClient, DirectorClient, MetadataStore, PlanCatalog, ResourceStore
from core.logging import log_checkpoint, log_context
from core.models import (
    ErrandTarget,
    InstanceDisk,
    PhaseResult,
    Resource,
    RestoreMetadata,
    RestoreOptions,
    SubTaskResult,
    phase_patch,
)

logger = logging.getLogger(__name__)

PhaseHandler = Callable[[Resource, RestoreOptions], Awaitable[Any]]

# Phases that complete inside their trigger handler
SYNCHRONOUS_PHASES = frozenset({RestorePhase.PUT_FILE})

# Errand phases -> RestoreMetadata attribute holding the errand target
ERRAND_PHASES: Dict[RestorePhase, str] = {
    RestorePhase.BASEBACKUP_ERRAND: "base_backup_errand",
    RestorePhase.PITR_ERRAND: "point_in_time_errand",
    RestorePhase.POST_BOSH_START_ERRAND: "post_start_errand",
}

# Catalog errand keys -> RestoreMetadata attribute
CATALOG_ERRANDS: Dict[str, str] = {
    "base_backup_restore": "base_backup_errand",
    "point_in_time": "point_in_time_errand",
    "post_start": "post_start_errand",
}

DISK_READY_STATES = ("ready", "available")
DISK_CREATING_STATES = ("creating",)


def polled_states() -> List[str]:
    """in_progress states that wait on a downstream task."""
    return [phase.in_progress_state for phase in RestorePhase if phase not in SYNCHRONOUS_PHASES]


def select_errand_instances(
    instances: List[InstanceDisk],
    selector: Optional[Union[str, int]],
) -> List[Dict[str, str]]:
    """
    Resolve an errand's target-instance selector.

    Args:
        instances: Deployment instances in discovery order
        selector: "all", "any" or a numeric instance index

    Returns:
        [{"group": job_name, "id": instance_id}, ...]

    Raises:
        InvalidInput: unknown selector or index out of range
    """
    if not instances:
        raise InvalidInput("Deployment has no instances to run errands on", field="instances")

    if selector == "all":
        return [{"group": i.job_name, "id": i.id} for i in instances]
    if selector == "any":
        return [{"group": instances[0].job_name, "id": instances[0].id}]

    if isinstance(selector, bool) or selector is None:
        raise InvalidInput(f"Invalid 'instances' option for errand: {selector}", field="instances", value=selector)
    if isinstance(selector, int):
        index = selector
    elif isinstance(selector, str) and selector.strip().isdecimal():
        index = int(selector.strip())
    else:
        raise InvalidInput(f"Invalid 'instances' option for errand: {selector}", field="instances", value=selector)

    if index < 0 or index >= len(instances):
        raise InvalidInput(
            f"Instance index {index} out of range for {len(instances)} instances",
            field="instances",
            value=selector,
        )
    return [{"group": instances[index].job_name, "id": instances[index].id}]


def disk_outcome(disk: Dict[str, Any]) -> TaskOutcome:
    """Classify cloud disk metadata into a task outcome."""
    state = str(disk.get("state") or "").lower()
    if state in DISK_READY_STATES:
        return TaskOutcome.SUCCEEDED
    if state in DISK_CREATING_STATES:
        return TaskOutcome.IN_PROGRESS
    return TaskOutcome.FAILED


def update_history(
    history: Optional[Dict[str, List[str]]],
    outcome: Optional[str],
    when: Optional[str],
    now: datetime,
    retention_days: int,
) -> Dict[str, List[str]]:
    """
    Add a restore time to the outcome's history list and prune old entries.

    Entries are ISO timestamps, kept unique and sorted. Entries older than
    retention_days are dropped.
    """
    cutoff = now - timedelta(days=retention_days)
    result: Dict[str, List[str]] = {}
    for key in (TaskOutcome.SUCCEEDED.value, TaskOutcome.FAILED.value):
        entries = set((history or {}).get(key) or [])
        if key == outcome and when:
            entries.add(when)
        kept = []
        for entry in entries:
            try:
                stamp = datetime.fromisoformat(entry.replace("Z", "+00:00"))
            except ValueError:
                logger.warning(f"Dropping unparseable restore history entry: {entry}")
                continue
            if stamp.tzinfo is None:
                stamp = stamp.replace(tzinfo=timezone.utc)
            if stamp >= cutoff:
                kept.append(entry)
        result[key] = sorted(kept)
    return result


class RestoreService:
    """
    Phase handlers for the restore workflow.

    Stateless between calls: everything needed to resume lives in the
    resource's spec.options.
    """

    RESOURCE_GROUP = ResourceGroup.RESTORE
    RESOURCE_TYPE = ResourceType.DEFAULT_BOSH_RESTORE

    def __init__(
        self,
        store: ResourceStore,
        director: DirectorClient,
        cloud: CloudDiskClient,
        metadata_store: MetadataStore,
        plan_catalog: PlanCatalog,
        restore_defaults: Optional[RestoreDefaults] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.director = director
        self.cloud = cloud
        self.metadata_store = metadata_store
        self.plan_catalog = plan_catalog
        self.restore_defaults = restore_defaults or get_defaults().restore
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._triggers: Dict[RestorePhase, PhaseHandler] = {
            RestorePhase.BOSH_STOP: self._trigger_bosh_stop,
            RestorePhase.CREATE_DISK: self._trigger_create_disk,
            RestorePhase.ATTACH_DISK: self._trigger_attach_disk,
            RestorePhase.PUT_FILE: self._trigger_put_file,
            RestorePhase.BASEBACKUP_ERRAND: self._trigger_errand,
            RestorePhase.PITR_ERRAND: self._trigger_errand,
            RestorePhase.BOSH_START: self._trigger_bosh_start,
            RestorePhase.POST_BOSH_START_ERRAND: self._trigger_errand,
        }
        self._pollers: Dict[RestorePhase, PhaseHandler] = {
            RestorePhase.BOSH_STOP: self._poll_director_task,
            RestorePhase.CREATE_DISK: self._poll_create_disk,
            RestorePhase.ATTACH_DISK: self._poll_attach_disk,
            RestorePhase.BASEBACKUP_ERRAND: self._poll_director_task,
            RestorePhase.PITR_ERRAND: self._poll_director_task,
            RestorePhase.BOSH_START: self._poll_director_task,
            RestorePhase.POST_BOSH_START_ERRAND: self._poll_director_task,
        }

        missing = set(RestorePhase) - set(self._triggers)
        unpolled = set(RestorePhase) - set(self._pollers) - SYNCHRONOUS_PHASES
        if missing or unpolled:
            raise RuntimeError(f"Restore phases without handlers: {sorted(p.value for p in missing | unpolled)}")

    # =========================================================================
    # ENTRY
    # =========================================================================

    async def start_restore(self, resource: Resource) -> Resource:
        """
        Discover the deployment, persist restoreMetadata and move to the first phase.

        Discovery runs once: a redelivered in_queue event for a restore
        that already has restoreMetadata reuses it.
        """
        options = RestoreOptions.model_validate(resource.options)
        with log_context(resource_id=options.restore_guid, operation=OperationType.RESTORE.value):
            metadata = options.restore_metadata
            if metadata is None:
                metadata = await self._discover(options)
            else:
                logger.info(f"Restore {options.restore_guid} already discovered, reusing restoreMetadata")

            now = self._clock()
            response = {
                "service_id": options.service_id,
                "plan_id": options.plan_id,
                "instance_guid": options.instance_guid,
                "username": options.username,
                "operation": OperationType.RESTORE.value,
                "backup_guid": options.arguments.backup_guid,
                "time_stamp": options.arguments.time_stamp,
                "state": "processing",
                "started_at": now.isoformat(),
                "finished_at": None,
                "tenant_id": options.tenant_id,
            }
            await self._write_restore_file(options, response, now)

            first = RestorePhase.first()
            updated = await self.store.patch(
                self.RESOURCE_GROUP,
                self.RESOURCE_TYPE,
                resource.resource_id,
                options={
                    "restoreMetadata": metadata.model_dump(by_alias=True, mode="json"),
                    "stateResults": {},
                },
                status={"state": first.trigger_state, "response": response},
            )
            log_checkpoint("restore_started", {
                "deployment_name": metadata.deployment_name,
                "instances": len(metadata.deployment_instances_info),
                "backup_guid": options.arguments.backup_guid,
            })
            return updated

    async def _discover(self, options: RestoreOptions) -> RestoreMetadata:
        service = self.plan_catalog.get_service(options.service_id)
        restore_config = service.restore_operation
        deployment_name = await self.director.get_deployment_name(options.instance_guid)

        instance_groups = restore_config.instance_group
        if isinstance(instance_groups, str):
            instance_groups = [instance_groups]
        disks = await self.director.get_persistent_disks(deployment_name, instance_groups)
        instances = [InstanceDisk(**disk) for disk in disks]

        old_disks = await asyncio.gather(
            *(self.cloud.get_disk_metadata(i.disk_cid, i.az) for i in instances)
        )
        for instance, old_disk in zip(instances, old_disks):
            instance.old_disk_info = old_disk or {}

        errands = {}
        for catalog_key, attribute in CATALOG_ERRANDS.items():
            errand = restore_config.errands.get(catalog_key)
            errands[attribute] = ErrandTarget(
                name=errand.name if errand else None,
                instances=errand.instances if errand else None,
            )

        logger.info(f"Restore of {deployment_name}: {len(instances)} instances, groups={instance_groups}")
        return RestoreMetadata(
            time_stamp=options.arguments.time_stamp,
            file_path=restore_config.filesystem_path,
            snapshot_id=options.arguments.backup.get("snapshotId"),
            deployment_name=deployment_name,
            deployment_instances_info=instances,
            **errands,
        )

    async def _write_restore_file(self, options: RestoreOptions, response: Dict[str, Any], now: datetime) -> None:
        """Write the restore file, carrying over pruned history from the previous one."""
        selector = self._file_selector(options)
        try:
            previous = await self.metadata_store.get_restore_file(selector)
        except NotFound:
            previous = {}

        data = dict(response)
        data["restore_dates"] = update_history(
            previous.get("restore_dates"),
            None,
            None,
            now,
            self.restore_defaults.history_retention_days,
        )
        if previous.get("last_restore_guid"):
            data["last_restore_guid"] = previous["last_restore_guid"]
        await self.metadata_store.put_file(selector, data)

    # =========================================================================
    # DISPATCH
    # =========================================================================

    async def trigger(self, resource: Resource) -> Any:
        """Run the trigger handler for the resource's trigger_<PHASE> state."""
        phase = self._phase_of(resource, is_trigger=True)
        options = RestoreOptions.model_validate(resource.options)
        with log_context(resource_id=resource.resource_id, phase=phase.value):
            return await self._triggers[phase](resource, options)

    async def poll(self, resource: Resource) -> bool:
        """
        Poll the downstream work of the resource's in_progress_<PHASE> state.

        Returns:
            True if the phase completed and the resource moved on
        """
        phase = self._phase_of(resource, is_trigger=False)
        options = RestoreOptions.model_validate(resource.options)
        with log_context(resource_id=resource.resource_id, phase=phase.value):
            return await self._pollers[phase](resource, options)

    @staticmethod
    def _phase_of(resource: Resource, is_trigger: bool) -> RestorePhase:
        parsed = RestorePhase.parse_state(resource.state)
        if parsed is None or parsed[1] != is_trigger:
            raise InvalidInput(f"{resource.state} is not a restore {'trigger' if is_trigger else 'in-progress'} state",
                               field="state", value=resource.state)
        return parsed[0]

    @staticmethod
    def _require_metadata(options: RestoreOptions) -> RestoreMetadata:
        if options.restore_metadata is None:
            raise InvalidInput(f"Restore {options.restore_guid} has no restoreMetadata", field="restoreMetadata")
        return options.restore_metadata

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    async def _record(
        self,
        resource: Resource,
        phase: RestorePhase,
        result: PhaseResult,
        state: Optional[str] = None,
        guarded: bool = False,
    ) -> Resource:
        """Record a phase result, optionally moving to state in the same write."""
        return await self.store.patch(
            self.RESOURCE_GROUP,
            self.RESOURCE_TYPE,
            resource.resource_id,
            options=phase_patch(phase, result),
            status={"state": state} if state else None,
            expected_version=resource.resource_version if guarded else None,
        )

    async def _advance(
        self,
        resource: Resource,
        phase: RestorePhase,
        result: PhaseResult,
        guarded: bool = False,
    ) -> None:
        """Record the completed phase and move to the next trigger, or finish."""
        following = phase.next_phase()
        if following is None:
            updated = await self._record(resource, phase, result, guarded=guarded)
            await self.finalize(updated, TaskOutcome.SUCCEEDED)
            return
        await self._record(resource, phase, result, following.trigger_state, guarded=guarded)
        log_checkpoint("phase_advanced", {"from": phase.value, "to": following.trigger_state})

    async def _issued(self, resource: Resource, phase: RestorePhase, result: PhaseResult) -> None:
        """Record issued work and move to in_progress."""
        await self._record(resource, phase, result, phase.in_progress_state)
        logger.info(f"{phase.value} issued for {resource.resource_id} (task {result.task_id or 'per instance'})")

    # =========================================================================
    # TRIGGERS
    # =========================================================================

    async def _trigger_director_task(
        self,
        resource: Resource,
        options: RestoreOptions,
        phase: RestorePhase,
        issue: Callable[[str], Awaitable[str]],
    ) -> None:
        result = options.result_for(phase)
        if result.task_id:
            logger.info(f"{phase.value} task {result.task_id} already issued, resuming polling")
            await self._record(resource, phase, result, phase.in_progress_state)
            return
        metadata = self._require_metadata(options)
        task_id = await issue(metadata.deployment_name)
        await self._issued(resource, phase, PhaseResult(task_id=str(task_id)))

    async def _trigger_bosh_stop(self, resource: Resource, options: RestoreOptions) -> None:
        await self._trigger_director_task(resource, options, RestorePhase.BOSH_STOP, self.director.stop_deployment)

    async def _trigger_bosh_start(self, resource: Resource, options: RestoreOptions) -> None:
        await self._trigger_director_task(resource, options, RestorePhase.BOSH_START, self.director.start_deployment)

    async def _trigger_fan_out(
        self,
        resource: Resource,
        options: RestoreOptions,
        phase: RestorePhase,
        issue: Callable[[InstanceDisk], Awaitable[SubTaskResult]],
    ) -> None:
        """
        Issue one sub-task per instance that has none recorded yet.

        Issued sub-tasks are recorded even when a sibling fails to issue,
        so a retry resumes with the missing instances only.
        """
        metadata = self._require_metadata(options)
        result = options.result_for(phase)

        if result.sub_task_ids_complete(options.instance_ids()):
            logger.info(f"{phase.value} already issued on every instance, resuming polling")
            await self._record(resource, phase, result, phase.in_progress_state)
            return

        pending = [i for i in metadata.deployment_instances_info
                   if not result.sub_task_ids_complete([i.id])]
        outcomes = await asyncio.gather(*(issue(i) for i in pending), return_exceptions=True)
        failures = []
        for instance, outcome in zip(pending, outcomes):
            if isinstance(outcome, BaseException):
                failures.append((instance, outcome))
            else:
                result.instances[instance.id] = outcome

        if failures:
            await self._record(resource, phase, result)
            instance, exc = failures[0]
            logger.error(f"{phase.value} could not be issued on {len(failures)} instance(s): {exc}")
            raise exc

        await self._issued(resource, phase, result)

    async def _trigger_create_disk(self, resource: Resource, options: RestoreOptions) -> None:
        metadata = self._require_metadata(options)
        if not metadata.snapshot_id:
            raise InvalidInput("Backup metadata has no snapshotId", field="snapshotId")

        async def issue(instance: InstanceDisk) -> SubTaskResult:
            disk_type = instance.old_disk_info.get("type")
            logger.info(f"Creating disk for {instance.id} from {metadata.snapshot_id} in {instance.az} ({disk_type})")
            disk = await self.cloud.create_disk_from_snapshot(metadata.snapshot_id, instance.az, {"type": disk_type})
            return SubTaskResult(task_id=disk["volumeId"], state=TaskOutcome.IN_PROGRESS, result=disk)

        await self._trigger_fan_out(resource, options, RestorePhase.CREATE_DISK, issue)

    async def _trigger_attach_disk(self, resource: Resource, options: RestoreOptions) -> None:
        metadata = self._require_metadata(options)
        disks = options.result_for(RestorePhase.CREATE_DISK)

        async def issue(instance: InstanceDisk) -> SubTaskResult:
            created = disks.instances.get(instance.id)
            if created is None or not created.task_id:
                raise InvalidInput(f"No new disk recorded for instance {instance.id}", field="volumeId")
            task_id = await self.director.create_disk_attachment(
                metadata.deployment_name, created.task_id, instance.job_name, instance.id
            )
            return SubTaskResult(task_id=str(task_id), state=TaskOutcome.IN_PROGRESS)

        await self._trigger_fan_out(resource, options, RestorePhase.ATTACH_DISK, issue)

    async def _trigger_put_file(self, resource: Resource, options: RestoreOptions) -> None:
        """Write the restore options to every instance over ssh, then move on."""
        phase = RestorePhase.PUT_FILE
        metadata = self._require_metadata(options)
        result = options.result_for(phase)
        pending = [i for i in metadata.deployment_instances_info
                   if not (result.instances.get(i.id) and result.instances[i.id].state == TaskOutcome.SUCCEEDED)]

        if pending:
            if not metadata.file_path:
                raise InvalidInput("Service catalog has no restore_operation.filesystem_path", field="filesystem_path")
            command = self.put_file_command(metadata.file_path, options)
            replies = await asyncio.gather(*(
                self.director.run_ssh(metadata.deployment_name, i.job_name, i.id, command) for i in pending
            ))
            failed = None
            for instance, reply in zip(pending, replies):
                succeeded = reply.get("code", 1) == 0
                result.instances[instance.id] = SubTaskResult(
                    state=TaskOutcome.SUCCEEDED if succeeded else TaskOutcome.FAILED,
                    result=reply,
                )
                if not succeeded and failed is None:
                    failed = (instance, reply)
            if failed is not None:
                await self._record(resource, phase, result)
                instance, reply = failed
                raise TaskFailed(
                    f"{phase.value} failed on {instance.job_name}/{instance.id}: {reply.get('stderr') or reply.get('code')}",
                    phase=phase.value,
                )
        else:
            logger.info(f"Restore file already written on every instance of {metadata.deployment_name}")

        await self._advance(resource, phase, result)

    @staticmethod
    def put_file_command(path: str, options: RestoreOptions) -> str:
        """Shell command writing the restore request to path."""
        document = json.dumps({
            "restore_guid": options.restore_guid,
            "instance_guid": options.instance_guid,
            "backup_guid": options.arguments.backup_guid,
            "time_stamp": options.arguments.time_stamp,
            "backup": options.arguments.backup,
        })
        target = shlex.quote(path)
        return "\n".join([
            f"rm -rf {target}",
            f"touch {target}",
            f"echo {shlex.quote(document)} > {target}",
            "sync",
        ])

    async def _trigger_errand(self, resource: Resource, options: RestoreOptions) -> None:
        phase = self._phase_of(resource, is_trigger=True)
        attribute = ERRAND_PHASES.get(phase)
        if attribute is None:
            raise InvalidInput(f"Errand type {phase.value} is invalid.", field="errand", value=phase.value)

        metadata = self._require_metadata(options)
        result = options.result_for(phase)
        if result.task_id:
            logger.info(f"Errand {phase.value} task {result.task_id} already issued, resuming polling")
            await self._record(resource, phase, result, phase.in_progress_state)
            return

        target: ErrandTarget = getattr(metadata, attribute)
        if not target.name:
            logger.info(f"Errand {attribute} not in catalog for {metadata.deployment_name}, skipping")
            await self._advance(resource, phase, PhaseResult(skipped=True))
            return
        if phase is RestorePhase.PITR_ERRAND and not metadata.time_stamp:
            logger.info(f"No point in time requested for {resource.resource_id}, skipping {target.name}")
            await self._advance(resource, phase, PhaseResult(skipped=True))
            return

        instances = select_errand_instances(metadata.deployment_instances_info, target.instances)
        logger.info(f"Running errand {target.name} on {instances}")
        task_id = await self.director.run_deployment_errand(metadata.deployment_name, target.name, instances)
        await self._issued(resource, phase, PhaseResult(task_id=str(task_id)))

    # =========================================================================
    # POLLS
    # =========================================================================

    async def _poll_director_task(self, resource: Resource, options: RestoreOptions) -> bool:
        phase = self._phase_of(resource, is_trigger=False)
        result = options.result_for(phase)
        if not result.task_id:
            raise TaskFailed(f"Task id for {phase.value} not found, polling cannot continue", phase=phase.value)

        task = await self.director.get_task(result.task_id)
        outcome = DirectorTaskState.classify(task.get("state"))
        if outcome is TaskOutcome.IN_PROGRESS:
            logger.debug(f"{phase.value} task {result.task_id} is {task.get('state')}")
            return False
        if outcome is TaskOutcome.FAILED:
            raise TaskFailed(
                f"{phase.value} failed as {task.get('state')}. Check task {result.task_id}",
                phase=phase.value,
                task_id=result.task_id,
            )

        result.task_result = task
        await self._advance(resource, phase, result, guarded=True)
        return True

    async def _poll_fan_out(
        self,
        resource: Resource,
        options: RestoreOptions,
        phase: RestorePhase,
        check: Callable[[InstanceDisk, SubTaskResult], Awaitable[Dict[str, Any]]],
        classify: Callable[[Dict[str, Any]], TaskOutcome],
    ) -> bool:
        """
        Poll every instance's sub-task.

        Any failed sub-task fails the phase; the phase advances only when
        every sub-task succeeded. Otherwise nothing is written.
        """
        metadata = self._require_metadata(options)
        result = options.result_for(phase)
        instances = metadata.deployment_instances_info
        for instance in instances:
            sub = result.instances.get(instance.id)
            if sub is None or not sub.task_id:
                raise TaskFailed(
                    f"Task id for {phase.value} not found for instance {instance.id}, polling cannot continue",
                    phase=phase.value,
                )

        replies = await asyncio.gather(*(check(i, result.instances[i.id]) for i in instances))
        outcomes = []
        for instance, reply in zip(instances, replies):
            outcome = classify(reply)
            outcomes.append(outcome)
            sub = result.instances[instance.id]
            if outcome is TaskOutcome.FAILED:
                raise TaskFailed(
                    f"{phase.value} failed on instance {instance.id}. Check task {sub.task_id}",
                    phase=phase.value,
                    task_id=sub.task_id,
                )
            if outcome is TaskOutcome.SUCCEEDED:
                sub.state = outcome
                sub.result = reply

        done = sum(1 for o in outcomes if o is TaskOutcome.SUCCEEDED)
        if done < len(instances):
            logger.debug(f"{phase.value}: {done}/{len(instances)} sub-tasks done")
            return False

        await self._advance(resource, phase, result, guarded=True)
        return True

    async def _poll_create_disk(self, resource: Resource, options: RestoreOptions) -> bool:
        async def check(instance: InstanceDisk, sub: SubTaskResult) -> Dict[str, Any]:
            return await self.cloud.get_disk_metadata(sub.task_id, instance.az)

        return await self._poll_fan_out(resource, options, RestorePhase.CREATE_DISK, check, disk_outcome)

    async def _poll_attach_disk(self, resource: Resource, options: RestoreOptions) -> bool:
        async def check(instance: InstanceDisk, sub: SubTaskResult) -> Dict[str, Any]:
            return await self.director.get_task(sub.task_id)

        return await self._poll_fan_out(
            resource,
            options,
            RestorePhase.ATTACH_DISK,
            check,
            lambda task: DirectorTaskState.classify(task.get("state")),
        )

    # =========================================================================
    # FINALIZATION
    # =========================================================================

    async def finalize(
        self,
        resource: Resource,
        outcome: TaskOutcome,
        exc: Optional[BaseException] = None,
    ) -> None:
        """
        Write the terminal outcome to the resource and the restore file.

        Safe to call more than once for the same restore.
        """
        options = RestoreOptions.model_validate(resource.options)
        now = self._clock()
        finished_at = now.isoformat()
        selector = self._file_selector(options)

        try:
            current = await self.metadata_store.get_restore_file(selector)
        except NotFound:
            current = {}

        if current.get("last_restore_guid") == options.restore_guid:
            logger.info(f"Restore {options.restore_guid} already finalized in metadata file, skipping file write")
        else:
            restore_time = (resource.status.response or {}).get("started_at") or finished_at
            document = {
                "state": outcome.value,
                "finished_at": finished_at,
                "restore_dates": update_history(
                    current.get("restore_dates"),
                    outcome.value,
                    restore_time,
                    now,
                    self.restore_defaults.history_retention_days,
                ),
                "last_restore_guid": options.restore_guid,
            }
            if current:
                await self.metadata_store.patch_restore_file(selector, document)
            else:
                logger.warning(f"Restore file for {options.restore_guid} missing, writing a new one")
                await self.metadata_store.put_file(selector, {
                    "operation": OperationType.RESTORE.value,
                    "backup_guid": options.arguments.backup_guid,
                    "started_at": restore_time,
                    **document,
                })

        status: Dict[str, Any] = {
            "state": ResourceState.SUCCEEDED.value if outcome is TaskOutcome.SUCCEEDED else ResourceState.FAILED.value,
            "response": {"state": outcome.value, "finished_at": finished_at},
        }
        if exc is not None:
            status["error"] = error_payload(exc)
        await self.store.patch(self.RESOURCE_GROUP, self.RESOURCE_TYPE, resource.resource_id, status=status)
        log_checkpoint("restore_finalized", {"restore_guid": options.restore_guid, "outcome": outcome.value})
        logger.info(f"Restore {options.restore_guid} finished: {outcome.value}")

    @staticmethod
    def _file_selector(options: RestoreOptions) -> Dict[str, Any]:
        return {
            "tenant_id": options.tenant_id,
            "service_id": options.service_id,
            "instance_guid": options.instance_guid,
        }


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "RestoreService",
    "PhaseHandler",
    "SYNCHRONOUS_PHASES",
    "ERRAND_PHASES",
    "polled_states",
    "select_errand_instances",
    "disk_outcome",
    "update_history",
]
