"""Tests for queueing of issue sync tasks."""

import itertools
import logging
import uuid
from functools import cmp_to_key

import pytest
from fakes import make_branch

from issuesync.models import (
    BRANCH_KEY,
    BRANCH_TYPE_KEY,
    PULL_REQUEST_KEY,
    ActivityStatus,
    BranchType,
    QueueStatus,
    Snapshot,
    TaskType,
)
from issuesync.trigger import IssueSyncTrigger, compare_by_snapshot


def _snapshot(project_uuid: str, created_at: int) -> Snapshot:
    return Snapshot(
        uuid=str(uuid.uuid4()), component_uuid=project_uuid, created_at=created_at, last=True
    )


@pytest.fixture
def trigger(branches, snapshots, task_queue):
    return IssueSyncTrigger(branches, snapshots, task_queue)


class TestTriggerOnIndexCreation:
    @pytest.mark.asyncio
    async def test_one_task_per_branch_needing_sync(self, trigger, branches, task_queue):
        flagged = branches.add(make_branch(key="main"))
        branches.add(make_branch(key="feature", need_issue_sync=False))

        result = await trigger.trigger_on_index_creation()

        assert result.tasks_submitted == 1
        assert len(task_queue.submitted) == 1
        submit = task_queue.submitted[0]
        assert submit.task_type == TaskType.BRANCH_ISSUE_SYNC
        assert submit.component.uuid == flagged.uuid
        assert submit.component.main_component_uuid == flagged.project_uuid
        assert submit.characteristics == {BRANCH_TYPE_KEY: "BRANCH", BRANCH_KEY: "main"}

    @pytest.mark.asyncio
    async def test_pull_request_characteristics(self, trigger, branches, task_queue):
        branches.add(make_branch(key="42", branch_type=BranchType.PULL_REQUEST))

        await trigger.trigger_on_index_creation()

        assert task_queue.submitted[0].characteristics == {
            BRANCH_TYPE_KEY: "PULL_REQUEST",
            PULL_REQUEST_KEY: "42",
        }

    @pytest.mark.asyncio
    async def test_nothing_to_do_leaves_queue_untouched(
        self, trigger, branches, task_queue, caplog
    ):
        caplog.set_level(logging.INFO, logger="issuesync.trigger")
        branches.add(make_branch(need_issue_sync=False))
        old = task_queue.add_queued(TaskType.BRANCH_ISSUE_SYNC, component_uuid="b-old")

        result = await trigger.trigger_on_index_creation()

        assert result.tasks_submitted == 0
        assert task_queue.submitted == []
        assert [t.uuid for t in task_queue.queue] == [old.uuid]
        assert caplog.messages == ["0 branch found in need of issue sync."]

    @pytest.mark.asyncio
    async def test_removes_previous_sync_tasks_only(self, trigger, branches, task_queue, caplog):
        caplog.set_level(logging.INFO, logger="issuesync.trigger")
        branches.add(make_branch())

        pending = task_queue.add_queued(
            TaskType.BRANCH_ISSUE_SYNC, component_uuid="b1", characteristics={"k": "v"}
        )
        running = task_queue.add_queued(
            TaskType.BRANCH_ISSUE_SYNC, component_uuid="b2", status=QueueStatus.IN_PROGRESS
        )
        report = task_queue.add_queued(
            TaskType.REPORT, component_uuid="b3", characteristics={"k": "v"}
        )
        done = task_queue.add_activity(
            TaskType.BRANCH_ISSUE_SYNC, ActivityStatus.FAILED, characteristics={"k": "v"}
        )
        report_done = task_queue.add_activity(TaskType.REPORT, characteristics={"k": "v"})

        result = await trigger.trigger_on_index_creation()

        remaining = {t.uuid for t in task_queue.queue}
        assert pending.uuid not in remaining
        assert {running.uuid, report.uuid} <= remaining
        assert [a.uuid for a in task_queue.activities] == [report_done.uuid]
        assert pending.uuid not in task_queue.characteristics
        assert done.uuid not in task_queue.characteristics
        assert report.uuid in task_queue.characteristics
        assert report_done.uuid in task_queue.characteristics
        assert result.pending_tasks_deleted == 1
        assert result.completed_tasks_deleted == 1

        assert caplog.messages == [
            "1 branch found in need of issue sync.",
            "1 pending indexation task found to be deleted...",
            "1 completed indexation task found to be deleted...",
            "Deleting tasks characteristics...",
            "Indexation task deletion complete.",
            "Tasks characteristics deletion complete.",
            "1 projects found in need of issue sync.",
            "1 issue sync tasks submitted.",
        ]

    @pytest.mark.asyncio
    async def test_task_claimed_after_selection_is_kept(self, trigger, branches, task_queue):
        branches.add(make_branch())
        old = task_queue.add_queued(
            TaskType.BRANCH_ISSUE_SYNC, component_uuid="b1", characteristics={"k": "v"}
        )
        select_queued = task_queue.select_queued

        async def _select_then_worker_claims(*args, **kwargs):
            selected = await select_queued(*args, **kwargs)
            await task_queue.peek("worker-1")
            return selected

        task_queue.select_queued = _select_then_worker_claims

        result = await trigger.trigger_on_index_creation()

        running = [t.uuid for t in task_queue.queue if t.status == QueueStatus.IN_PROGRESS]
        assert running == [old.uuid]
        assert old.uuid in task_queue.characteristics
        assert result.pending_tasks_deleted == 0
        assert result.tasks_submitted == 1

    @pytest.mark.asyncio
    async def test_failed_cleanup_submits_nothing(self, trigger, branches, task_queue):
        branches.add(make_branch())
        old = task_queue.add_queued(TaskType.BRANCH_ISSUE_SYNC, component_uuid="b1")

        async def _failing_delete(queued_uuids, activity_uuids):
            raise RuntimeError("connection lost")

        task_queue.delete_tasks = _failing_delete

        with pytest.raises(RuntimeError, match="connection lost"):
            await trigger.trigger_on_index_creation()

        assert [t.uuid for t in task_queue.queue] == [old.uuid]
        assert task_queue.submitted == []

    @pytest.mark.asyncio
    async def test_orders_projects_by_last_analysis(self, trigger, branches, snapshots, task_queue):
        never_analyzed_1 = branches.add(make_branch(project_uuid="p-none-1"))
        oldest = branches.add(make_branch(project_uuid="p-old"))
        never_analyzed_2 = branches.add(make_branch(project_uuid="p-none-2"))
        newest = branches.add(make_branch(project_uuid="p-new"))
        middle = branches.add(make_branch(project_uuid="p-mid"))
        snapshots.snapshots.extend(
            [_snapshot("p-old", 1_000), _snapshot("p-new", 3_000), _snapshot("p-mid", 2_000)]
        )

        await trigger.trigger_on_index_creation()

        assert [s.component.uuid for s in task_queue.submitted] == [
            newest.uuid,
            middle.uuid,
            oldest.uuid,
            never_analyzed_1.uuid,
            never_analyzed_2.uuid,
        ]

    @pytest.mark.asyncio
    async def test_branches_of_same_project_stay_together(
        self, trigger, branches, snapshots, task_queue
    ):
        main = branches.add(make_branch(project_uuid="p1", key="main"))
        branches.add(make_branch(project_uuid="p2", key="main"))
        pr = branches.add(
            make_branch(project_uuid="p1", key="7", branch_type=BranchType.PULL_REQUEST)
        )
        snapshots.snapshots.extend([_snapshot("p1", 2_000), _snapshot("p2", 1_000)])

        result = await trigger.trigger_on_index_creation()

        assert [s.component.uuid for s in task_queue.submitted][:2] == [main.uuid, pr.uuid]
        assert result.projects == 2
        assert snapshots.requested == [["p1", "p2"]]

    @pytest.mark.asyncio
    async def test_many_branches_half_without_analysis(
        self, trigger, branches, snapshots, task_queue
    ):
        for i in range(100):
            branch = branches.add(make_branch())
            snapshots.snapshots.append(_snapshot(branch.project_uuid, 1_000 + i))
        for _ in range(100):
            branches.add(make_branch())

        result = await trigger.trigger_on_index_creation()

        assert result.tasks_submitted == 200
        assert len({s.component.uuid for s in task_queue.submitted}) == 200
        analyzed = {s.component_uuid: s.created_at for s in snapshots.snapshots}
        created = [analyzed.get(s.component.main_component_uuid) for s in task_queue.submitted]
        assert all(c is not None for c in created[:100])
        assert all(c is None for c in created[100:])
        assert created[:100] == sorted(created[:100], reverse=True)

    @pytest.mark.asyncio
    async def test_uses_injected_logger(self, branches, snapshots, task_queue, caplog):
        caplog.set_level(logging.INFO, logger="custom.sink")
        trigger = IssueSyncTrigger(
            branches, snapshots, task_queue, log=logging.getLogger("custom.sink")
        )

        await trigger.trigger_on_index_creation()

        assert [r.name for r in caplog.records] == ["custom.sink"]


class TestTriggerVariants:
    @pytest.mark.asyncio
    async def test_trigger_for_all_branches_flags_everything(self, trigger, branches, task_queue):
        branches.add(make_branch(need_issue_sync=False))
        branches.add(make_branch(need_issue_sync=False))

        result = await trigger.trigger_for_all_branches()

        assert result.tasks_submitted == 2
        assert all(b.need_issue_sync for b in branches.branches.values())

    @pytest.mark.asyncio
    async def test_trigger_for_project_keeps_other_projects_tasks(
        self, trigger, branches, task_queue
    ):
        target = branches.add(make_branch(project_uuid="p1", need_issue_sync=False))
        other = branches.add(make_branch(project_uuid="p2"))
        stale = task_queue.add_queued(TaskType.BRANCH_ISSUE_SYNC, component_uuid=target.uuid)
        foreign = task_queue.add_queued(TaskType.BRANCH_ISSUE_SYNC, component_uuid=other.uuid)

        result = await trigger.trigger_for_project("p1")

        queued_components = [t.component_uuid for t in task_queue.queue]
        assert stale.uuid not in {t.uuid for t in task_queue.queue}
        assert foreign.uuid in {t.uuid for t in task_queue.queue}
        assert queued_components.count(target.uuid) == 1
        assert result.tasks_submitted == 1
        assert branches.branches[target.uuid].need_issue_sync is True

    @pytest.mark.asyncio
    async def test_trigger_for_unknown_project_is_a_no_op(self, trigger, task_queue):
        result = await trigger.trigger_for_project("missing")

        assert result.tasks_submitted == 0
        assert task_queue.submitted == []


class TestCompareBySnapshot:
    def test_most_recent_first_and_missing_last(self):
        compare = compare_by_snapshot({"a": _snapshot("a", 10), "b": _snapshot("b", 20)})

        assert compare("b", "a") < 0
        assert compare("a", "b") > 0
        assert compare("a", "missing") < 0
        assert compare("missing", "a") > 0
        assert compare("missing", "other-missing") == 0
        assert compare("a", "a") == 0

    def test_ordering_is_consistent_for_every_input_permutation(self):
        snapshots = {
            "p1": _snapshot("p1", 30),
            "p2": _snapshot("p2", 10),
            "p3": _snapshot("p3", 20),
            "p4": _snapshot("p4", 20),
        }
        compare = compare_by_snapshot(snapshots)
        uuids = ["p1", "p2", "p3", "p4", "x1", "x2"]

        for a, b, c in itertools.product(uuids, repeat=3):
            if compare(a, b) <= 0 and compare(b, c) <= 0:
                assert compare(a, c) <= 0, (a, b, c)

        for perm in itertools.permutations(uuids):
            ordered = sorted(perm, key=cmp_to_key(compare))
            assert ordered[0] == "p1"
            assert set(ordered[1:3]) == {"p3", "p4"}
            assert ordered[3] == "p2"
            assert set(ordered[4:]) == {"x1", "x2"}
