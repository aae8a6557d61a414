import pytest
from casty import ActorSystem

from cirrus.actors.reconciler import EC2_MAX_FILTER, find_dead, reconcile_once, reconciler_actor
from cirrus.state import ClusterState, LiveInstance

from tests.conftest import FakeProvider, MemoryStateStore, eventually

pytestmark = [pytest.mark.unit]


def _instances(n: int) -> dict[str, LiveInstance]:
    return {
        f"i-{k:05d}": LiveInstance(id=f"i-{k:05d}", dns=f"host-{k}", type="c5.large")
        for k in range(n)
    }


class TestFindDead:
    @pytest.mark.asyncio
    async def test_dead_states_and_missing(self) -> None:
        provider = FakeProvider()
        provider.states = {
            "i-a": "running",
            "i-b": "pending",
            "i-c": "shutting-down",
            "i-d": "terminated",
            "i-e": "stopping",
            "i-f": "stopped",
        }
        dead = await find_dead(["i-a", "i-b", "i-c", "i-d", "i-e", "i-f", "i-gone"], provider.describe)
        assert dead == ["i-c", "i-d", "i-e", "i-f", "i-gone"]

    @pytest.mark.asyncio
    async def test_paginates_at_filter_limit(self) -> None:
        provider = FakeProvider()
        ids = [f"i-{k:05d}" for k in range(450)]
        provider.states = {iid: "running" for iid in ids}

        assert await find_dead(ids, provider.describe) == []
        assert [len(page) for page in provider.describe_calls] == [EC2_MAX_FILTER, EC2_MAX_FILTER, 50]

    @pytest.mark.asyncio
    async def test_unrelated_ids_ignored(self) -> None:
        async def describe(ids):
            return {**{iid: "running" for iid in ids}, "i-stranger": "terminated"}

        assert await find_dead(["i-1", "i-2"], describe) == []


class TestReconcileOnce:
    @pytest.mark.asyncio
    async def test_removes_exactly_the_dead_across_pages(self) -> None:
        instances = _instances(450)
        store = MemoryStateStore(instances)
        provider = FakeProvider()
        provider.states = {iid: "running" for iid in instances}
        doomed = {"i-00003", "i-00199", "i-00200", "i-00321", "i-00449"}
        for iid in doomed:
            provider.states[iid] = "terminated"
        del provider.states["i-00300"]
        doomed.add("i-00300")

        dead = await reconcile_once(provider, ClusterState(store))

        assert set(dead) == doomed
        assert set(store.data) == set(instances) - doomed
        assert store.saves == 1
        assert len(provider.describe_calls) == 3

    @pytest.mark.asyncio
    async def test_nothing_dead_no_write(self) -> None:
        instances = _instances(3)
        store = MemoryStateStore(instances)
        provider = FakeProvider()
        provider.states = {iid: "running" for iid in instances}

        assert await reconcile_once(provider, ClusterState(store)) == ()
        assert store.saves == 0

    @pytest.mark.asyncio
    async def test_describe_failure_leaves_state(self) -> None:
        instances = _instances(3)
        store = MemoryStateStore(instances)
        provider = FakeProvider()
        provider.describe_error = RuntimeError("throttled")

        with pytest.raises(RuntimeError):
            await reconcile_once(provider, ClusterState(store))
        assert set(store.data) == set(instances)

    @pytest.mark.asyncio
    async def test_empty_state(self) -> None:
        provider = FakeProvider()
        assert await reconcile_once(provider, ClusterState(MemoryStateStore())) == ()
        assert provider.describe_calls == []


class TestReconcilerActor:
    @pytest.mark.asyncio
    async def test_reconciles_on_start(self) -> None:
        instances = _instances(2)
        store = MemoryStateStore(instances)
        provider = FakeProvider()
        provider.states = {"i-00000": "running", "i-00001": "stopped"}
        seen: list[set[str]] = []
        state = ClusterState(store, on_change=lambda inst: seen.append(set(inst)))

        async with ActorSystem("test-reconciler") as system:
            system.spawn(
                reconciler_actor(provider, state, reconcile_interval=60, refresh_interval=60),
                "reconciler",
            )
            await eventually(lambda: store.data is not None and len(store.data) == 1)

        assert set(store.data) == {"i-00000"}
        assert seen[-1] == {"i-00000"}

    @pytest.mark.asyncio
    async def test_refresh_publishes_external_changes(self) -> None:
        store = MemoryStateStore()
        provider = FakeProvider()
        seen: list[set[str]] = []
        state = ClusterState(store, on_change=lambda inst: seen.append(set(inst)))

        async with ActorSystem("test-refresher") as system:
            system.spawn(
                reconciler_actor(provider, state, reconcile_interval=60, refresh_interval=0.02),
                "reconciler",
            )
            provider.states = {"i-00000": "running"}
            store.data = _instances(1)
            await eventually(lambda: bool(seen) and seen[-1] == {"i-00000"})

    @pytest.mark.asyncio
    async def test_keeps_running_after_failed_reconcile(self) -> None:
        store = MemoryStateStore(_instances(1))
        provider = FakeProvider()
        provider.describe_error = RuntimeError("throttled")

        async with ActorSystem("test-reconciler-fail") as system:
            system.spawn(
                reconciler_actor(provider, ClusterState(store), reconcile_interval=0.02, refresh_interval=60),
                "reconciler",
            )
            await eventually(lambda: len(provider.describe_calls) >= 3)

        assert set(store.data) == {"i-00000"}
