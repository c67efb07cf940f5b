"""Tests for action variants."""
import pytest

from commands import SceneSet, ZoneSetLevel
from modules.actions import (
    ActionError,
    SceneSetAction,
    SceneSetToggleAction,
    ZoneSetLevelAction,
    ZoneSetLevelToggleAction,
)
from modules.ingredients import BindError
from tests.conftest import RecordingProcessor


@pytest.fixture
def processor(service):
    recorder = RecordingProcessor()
    service.cmd_processor = recorder
    return recorder


class TestZoneSetLevelAction:

    def test_execute_enqueues_one_group(self, service, processor):
        action = ZoneSetLevelAction.bind({"ZoneID": "z1", "Level": 75})

        action.execute(service)

        assert len(processor.groups) == 1
        (cmd,) = processor.groups[0].cmds
        assert isinstance(cmd, ZoneSetLevel)
        assert cmd.zone_id == "z1"
        assert cmd.zone_address == "2"
        assert cmd.device_id == "bridge1"
        assert cmd.level == 75.0

    def test_unknown_zone_raises(self, service, processor):
        action = ZoneSetLevelAction.bind({"ZoneID": "nope", "Level": 75})

        with pytest.raises(ActionError):
            action.execute(service)
        assert processor.groups == []

    def test_level_out_of_range_fails_to_bind(self):
        with pytest.raises(BindError) as exc:
            ZoneSetLevelAction.bind({"ZoneID": "z1", "Level": 101})
        assert exc.value.field == "Level"

    def test_missing_level_fails_to_bind(self):
        with pytest.raises(BindError) as exc:
            ZoneSetLevelAction.bind({"ZoneID": "z1"})
        assert exc.value.field == "Level"

    def test_type_and_catalog_description(self):
        action = ZoneSetLevelAction()
        assert action.type() == "ZoneSetLevelAction"
        assert [i.id for i in action.ingredients()] == ["Level", "ZoneID"]
        assert action.ingredients()[1].reference == "zone"


def test_zone_toggle_alternates_levels(service, processor):
    action = ZoneSetLevelToggleAction.bind({"ZoneID": "z2", "Level1": 100, "Level2": 0})

    action.execute(service)
    action.execute(service)
    action.execute(service)

    assert [g.cmds[0].level for g in processor.groups] == [100.0, 0.0, 100.0]


class TestSceneActions:

    def test_device_scene_sends_scene_command(self, service, processor):
        SceneSetAction.bind({"SceneID": "s1"}).execute(service)

        (cmd,) = processor.groups[0].cmds
        assert isinstance(cmd, SceneSet)
        assert cmd.scene_address == "1"
        assert cmd.device_id == "bridge1"

    def test_managed_scene_expands_to_zone_levels(self, service, processor):
        SceneSetAction.bind({"SceneID": "s2"}).execute(service)

        group = processor.groups[0]
        assert [(c.zone_id, c.level) for c in group.cmds] == [("z1", 80.0), ("z2", 20.0)]

    def test_unknown_scene_raises(self, service, processor):
        with pytest.raises(ActionError):
            SceneSetAction.bind({"SceneID": "missing"}).execute(service)

    def test_scene_toggle_alternates(self, service, processor):
        action = SceneSetToggleAction.bind({"SceneID1": "s1", "SceneID2": "s2"})

        action.execute(service)
        action.execute(service)

        assert isinstance(processor.groups[0].cmds[0], SceneSet)
        assert len(processor.groups[1].cmds) == 2
