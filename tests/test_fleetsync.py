import asyncio
import os
import sys

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from client.errors import FleetApiError, RequestRejected  # noqa: E402
from dashboard.store import COLLECTION_ID, SYSTEM_ID  # noqa: E402
from fleetsync import FleetSync  # noqa: E402
from models.entities import EntityStatus  # noqa: E402
from models.updates import BoxCreate, ResourceLimitsUpdate, ViewerUpdate  # noqa: E402
from runtime.severity import Severity  # noqa: E402


async def _wait_for(cond, timeout: float = 1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not cond():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def _fleet(fake_api, **kw):
    fake_api.boxes["b1"] = {"_id": "b1", "name": "alpha", "status": "idle", "viewers": ["v1"]}
    fake_api.viewers["v1"] = {
        "_id": "v1",
        "box": "b1",
        "status": "running",
        "streamUrl": "https://t.tv/alpha",
        "isParseChatEnabled": True,
        "maxTabs": 2,
        "tabs": [{"status": "running"}],
    }
    opts = dict(
        box_interval=10,
        viewer_interval=10,
        system_interval=10,
        resource_interval=10,
        chat_interval=10,
        logs_interval=10,
        list_interval=10,
        refresh_delay=0.01,
    )
    opts.update(kw)
    return FleetSync(fake_api, **opts)


@pytest.mark.asyncio
async def test_start_loads_collections_and_system(fake_api):
    sync = _fleet(fake_api)
    await sync.start()
    try:
        assert [b.id for b in sync.store.boxes()] == ["b1"]
        assert sync.store.box_of("v1") == "b1"
        assert sync.system.is_polling(SYSTEM_ID)
        assert sync.chat.selected == "https://t.tv/alpha"
        await _wait_for(lambda: sync.store.system() is not None)
        st = sync.stats()
        assert (st.total_boxes, st.active_viewers) == (1, 1)
    finally:
        await sync.shutdown()
    assert not sync.system.polling_ids
    assert not sync.chat.polling


@pytest.mark.asyncio
async def test_listing_failure_keeps_last_known_state(fake_api, transport_error):
    sync = _fleet(fake_api)
    await sync.refresh_boxes()
    fake_api.fail["list_boxes"] = transport_error
    await sync.refresh_boxes()
    assert sync.store.box("b1") is not None
    assert sync.store.error("box", COLLECTION_ID) == "backend unreachable"
    del fake_api.fail["list_boxes"]
    await sync.refresh_boxes()
    assert sync.store.error("box", COLLECTION_ID) is None
    await sync.shutdown()


@pytest.mark.asyncio
async def test_start_box_is_optimistic_then_refreshes(fake_api):
    sync = _fleet(fake_api)
    await sync.refresh_boxes()
    await sync.start_box("b1")
    assert sync.store.box("b1").status is EntityStatus.STARTING
    fake_api.boxes["b1"]["status"] = "running"
    await _wait_for(lambda: sync.store.box("b1").status is EntityStatus.RUNNING)
    assert fake_api.count("list_boxes") == 2
    await sync.shutdown()


@pytest.mark.asyncio
async def test_rejected_action_reaches_caller_only(fake_api):
    sync = _fleet(fake_api)
    await sync.refresh_viewers()
    fake_api.fail["update_viewer"] = RequestRejected("maxTabs too large", status=400)
    with pytest.raises(RequestRejected):
        await sync.update_viewer("v1", ViewerUpdate(max_tabs=2))
    assert sync.store.error("viewer", "v1") is None
    assert sync.store.viewer("v1").max_tabs == 2
    await sync.shutdown()


@pytest.mark.asyncio
async def test_open_viewer_switches_detail_loops(fake_api):
    fake_api.viewers["v2"] = {"_id": "v2", "status": "starting"}
    sync = _fleet(fake_api)
    await sync.open_viewer("v1")
    assert sync.viewers.polling_ids == ["v1"]
    assert sync.logs.polling_ids == ["v1"]
    await sync.open_viewer("v2")
    assert sync.viewers.polling_ids == ["v2"]
    assert sync.logs.polling_ids == ["v2"]
    await sync.open_viewer(None)
    assert sync.viewers.polling_ids == []
    await sync.shutdown()


@pytest.mark.asyncio
async def test_box_resources_follow_box_status(fake_api):
    fake_api.resources["b1"] = {"cpu": 90, "memory": 100}
    sync = _fleet(fake_api)
    await sync.open_box("b1")
    assert not sync.resources.is_polling("b1")
    assert sync.box_severity("b1") is None

    fake_api.boxes["b1"]["status"] = "running"
    sync.store.merge("box", "b1", {"status": "running"})
    assert sync.resources.is_polling("b1")
    await _wait_for(lambda: sync.store.resources("b1") is not None)
    assert sync.box_severity("b1") is Severity.CRITICAL
    await sync.shutdown()


@pytest.mark.asyncio
async def test_viewer_severity_uses_viewer_limits(fake_api):
    sync = _fleet(fake_api)
    sync.store.merge(
        "viewer",
        "v1",
        {"resources": {"memory": 300}, "resourceLimits": {"memoryLimit": 400}},
    )
    assert sync.viewer_severity("v1") is Severity.WARN
    await sync.update_box_resource_limits("b1", ResourceLimitsUpdate(cpu_limit=50))
    assert sync.store.box("b1").resource_limits.cpu_limit == 50
    await sync.shutdown()


@pytest.mark.asyncio
async def test_create_and_delete_box(fake_api):
    sync = _fleet(fake_api)
    box = await sync.create_box(BoxCreate(name="bravo", vpn_config="de.ovpn", viewers_per_box=5))
    assert box.viewers_per_box == 5
    await sync.open_box(box.id)
    await sync.delete_box(box.id)
    assert sync.store.box(box.id) is None
    assert sync.boxes.focused is None
    await sync.shutdown()


@pytest.mark.asyncio
async def test_resource_manager_actions(fake_api):
    sync = _fleet(fake_api)
    await sync.load_resource_manager()
    assert sync.store.system().resource_manager.check_interval == 60000
    await sync.stop_idle_viewers(force=True)
    await sync.trigger_resource_check()
    assert ("stop_idle_viewers", True) in fake_api.calls
    assert fake_api.count("trigger_resource_check") == 1
    await sync.shutdown()
    await sync.shutdown()


@pytest.mark.asyncio
async def test_delete_box_takes_its_viewers_along(fake_api):
    fake_api.viewers["v2"] = {"_id": "v2", "box": "b2", "status": "running"}
    sync = _fleet(fake_api)
    await sync.refresh_boxes()
    await sync.refresh_viewers()
    await sync.open_viewer("v1")
    assert sync.chat.selected == "https://t.tv/alpha"

    await sync.delete_box("b1")
    assert sync.store.viewer("v1") is None
    assert sync.store.box_of("v1") is None
    assert sync.store.viewer("v2") is not None
    assert sync.viewers.focused is None
    assert sync.viewers.polling_ids == []
    assert sync.logs.polling_ids == []
    assert sync.chat.selected is None
    await sync.shutdown()


@pytest.mark.asyncio
async def test_viewer_removed_by_listing_stops_its_loops(fake_api):
    sync = _fleet(fake_api, viewer_interval=0.01, logs_interval=0.01)
    await sync.open_viewer("v1")
    assert sync.viewers.is_polling("v1") and sync.logs.is_polling("v1")

    del fake_api.viewers["v1"]
    await sync.refresh_viewers()
    assert not sync.viewers.is_polling("v1")
    assert not sync.logs.is_polling("v1")
    polls = fake_api.count("get_viewer_status")
    await asyncio.sleep(0.05)
    assert fake_api.count("get_viewer_status") == polls

    # the viewer coming back makes it pollable again
    fake_api.viewers["v1"] = {"_id": "v1", "status": "running"}
    await sync.refresh_viewers()
    assert sync.viewers.is_polling("v1")
    await sync.shutdown()


@pytest.mark.asyncio
async def test_create_box_without_id_is_an_api_error(fake_api):
    sync = _fleet(fake_api)

    async def create_without_id(data):
        return {"name": data.name}

    fake_api.create_box = create_without_id
    with pytest.raises(FleetApiError):
        await sync.create_box(BoxCreate(name="bravo", vpn_config="de.ovpn"))
    assert sync.store.boxes() == []
    await sync.shutdown()


@pytest.mark.asyncio
async def test_intervals_read_from_env_at_construction(fake_api, monkeypatch):
    monkeypatch.setenv("BOX_POLL_INTERVAL", "7")
    monkeypatch.setenv("LIST_POLL_INTERVAL", "45")
    sync = FleetSync(fake_api, viewer_interval=2)
    assert sync.boxes.interval == 7.0
    assert sync.viewers.interval == 2.0
    assert sync.list_interval == 45.0
    assert sync.system.interval == 10.0
    await sync.shutdown()


@pytest.mark.asyncio
async def test_start_does_not_fetch_listings_twice(fake_api):
    sync = _fleet(fake_api, list_interval=0.05)
    await sync.start(with_system=False)
    await asyncio.sleep(0.02)
    assert fake_api.count("list_boxes") == 1
    assert fake_api.count("list_viewers") == 1
    await _wait_for(lambda: fake_api.count("list_boxes") == 2)
    await sync.shutdown()
