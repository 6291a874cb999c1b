"""
Tests for ClashZone persistence and resolution flags
"""

import pytest

from sleeve_ledger import (
    ClashZone,
    ClusterSleeve,
    ResolutionTier,
    SleeveSnapshotView,
    ValidationError,
    clash_zone_guid,
    create_ledger,
)


def make_zones(n, category="Pipes", host=2000):
    return [ClashZone.detect(1000 + i, host, (float(i), 1.0, 2.0), category) for i in range(n)]


class TestClashZoneModel:
    def test_detect_derives_guid(self):
        zone = ClashZone.detect(5, 6, (1.0, 2.0, 3.0), "Pipes")
        assert zone.guid == clash_zone_guid(5, 6, (1.0, 2.0, 3.0))
        assert zone.resolution_tier == ResolutionTier.UNRESOLVED

    def test_guid_normalized(self):
        zone = ClashZone(guid="{abc-def}", mep_category="Pipes")
        assert zone.guid == "ABC-DEF"

    def test_dict_round_trip_keeps_flags(self):
        zone = ClashZone.detect(5, 6, (1.0, 2.0, 3.0), "Pipes", is_cluster_resolved=True,
                                cluster_instance_id=44)
        restored = ClashZone.from_dict(zone.to_dict())
        assert restored == zone
        assert restored.resolution_tier == ResolutionTier.CLUSTER


class TestSaveClashZones:
    def test_insert_and_update(self):
        ledger = create_ledger()
        zones = make_zones(3)
        assert ledger.clash_zones.save_clash_zones(zones) == 3
        assert ledger.clash_zones.save_clash_zones(zones) == 0
        assert len(ledger.clash_zones.get_clash_zones()) == 3

    def test_update_keeps_flags(self):
        ledger = create_ledger()
        zones = make_zones(1)
        ledger.clash_zones.save_clash_zones(zones)
        ledger.clash_zones.mark_resolved([zones[0].guid], 77)
        redetected = make_zones(1)
        redetected[0].width = 0.25
        ledger.clash_zones.save_clash_zones(redetected)
        stored = ledger.clash_zones.get_clash_zone(zones[0].guid)
        assert stored.is_resolved
        assert stored.sleeve_instance_id == 77
        assert stored.width == 0.25

    def test_duplicates_in_input_saved_once(self):
        ledger = create_ledger()
        zones = make_zones(2)
        assert ledger.clash_zones.save_clash_zones(zones + zones) == 2

    def test_missing_category_rejected(self):
        ledger = create_ledger()
        with pytest.raises(ValidationError):
            ledger.clash_zones.save_clash_zones([ClashZone(guid="A", mep_category="")])
        assert ledger.clash_zones.get_clash_zones() == []

    @pytest.mark.parametrize("guid", [None, "", "   "])
    def test_missing_guid_rejected(self, guid):
        ledger = create_ledger()
        with pytest.raises(ValidationError):
            ledger.clash_zones.save_clash_zones([ClashZone(guid=guid, mep_category="Pipes")])
        assert ledger.clash_zones.get_clash_zones() == []

    def test_lookup_is_case_insensitive(self):
        ledger = create_ledger()
        zone = make_zones(1)[0]
        ledger.clash_zones.save_clash_zones([zone])
        assert ledger.clash_zones.get_clash_zone(zone.guid.lower()).guid == zone.guid


class TestResolutionFlags:
    def test_tiers_are_additive(self):
        ledger = create_ledger()
        zone = make_zones(1)[0]
        ledger.clash_zones.save_clash_zones([zone])
        ledger.clash_zones.mark_resolved([zone.guid], 10)
        ledger.clash_zones.mark_cluster_resolved([zone.guid], 20)
        ledger.clash_zones.mark_combined_resolved([zone.guid], 30)
        stored = ledger.clash_zones.get_clash_zone(zone.guid)
        assert stored.is_resolved and stored.is_cluster_resolved and stored.is_combined_resolved
        assert (stored.sleeve_instance_id, stored.cluster_instance_id,
                stored.combined_instance_id) == (10, 20, 30)
        assert stored.resolution_tier == ResolutionTier.COMBINED

    def test_higher_tier_does_not_clear_lower(self):
        ledger = create_ledger()
        zone = make_zones(1)[0]
        ledger.clash_zones.save_clash_zones([zone])
        ledger.clash_zones.mark_resolved([zone.guid], 10)
        ledger.clash_zones.mark_combined_resolved([zone.guid])
        stored = ledger.clash_zones.get_clash_zone(zone.guid)
        assert stored.is_resolved
        assert stored.is_combined_resolved
        assert stored.sleeve_instance_id == 10
        assert stored.combined_instance_id == -1

    def test_unknown_guids_update_nothing(self):
        ledger = create_ledger()
        assert ledger.clash_zones.mark_resolved(["NOT-A-ZONE"], 10) == 0
        assert ledger.clash_zones.mark_resolved([], 10) == 0

    def test_cluster_members_combined(self):
        ledger = create_ledger()
        zones = make_zones(3)
        ledger.clash_zones.save_clash_zones(zones)
        ledger.clash_zones.mark_cluster_resolved([z.guid for z in zones[:2]], 500)
        assert ledger.clash_zones.mark_cluster_members_combined(500, 800) == 2
        assert ledger.clash_zones.get_clash_zone(zones[2].guid).is_combined_resolved is False

    def test_force_redetection_reset(self):
        ledger = create_ledger()
        zones = make_zones(2) + make_zones(1, category="Ducts", host=3000)
        ledger.clash_zones.save_clash_zones(zones)
        guids = [z.guid for z in zones]
        ledger.clash_zones.mark_resolved(guids, 10)
        ledger.clash_zones.mark_cluster_resolved(guids, 20)
        assert ledger.clash_zones.force_redetection_reset("Pipes") == 2
        for zone in ledger.clash_zones.get_clash_zones("Pipes"):
            assert zone.resolution_tier == ResolutionTier.UNRESOLVED
            assert zone.sleeve_instance_id == -1
            assert zone.cluster_instance_id == -1
            assert zone.guid in guids
        assert ledger.clash_zones.get_clash_zones("Ducts")[0].is_resolved

    def test_current_clash_flags(self):
        ledger = create_ledger()
        zones = make_zones(3)
        ledger.clash_zones.save_clash_zones(zones)
        assert ledger.clash_zones.reset_current_clash_flags("Pipes") == 3
        assert ledger.clash_zones.set_current_clash([zones[0].guid]) == 1
        stats = ledger.clash_zones.flag_statistics("Pipes")
        assert stats['current'] == 1

    def test_flag_statistics(self):
        ledger = create_ledger()
        zones = make_zones(4)
        ledger.clash_zones.save_clash_zones(zones)
        ledger.clash_zones.mark_resolved([zones[0].guid], 1)
        ledger.clash_zones.mark_cluster_resolved([zones[1].guid], 2)
        ledger.clash_zones.mark_combined_resolved([zones[1].guid], 3)
        assert ledger.clash_zones.flag_statistics() == {
            'total': 4, 'resolved': 1, 'cluster_resolved': 1, 'combined_resolved': 1,
            'current': 4, 'unresolved': 2,
        }

    def test_delete_by_category(self):
        ledger = create_ledger()
        ledger.clash_zones.save_clash_zones(make_zones(2) + make_zones(1, "Ducts", host=3000))
        assert ledger.clash_zones.delete_clash_zones("Pipes") == 2
        assert len(ledger.clash_zones.get_clash_zones()) == 1


class TestMarkableIndividuals:
    def test_snapshot_joined_when_present(self):
        ledger = create_ledger()
        zones = make_zones(2)
        ledger.clash_zones.save_clash_zones(zones)
        ledger.clash_zones.mark_resolved([zones[0].guid], 101)
        ledger.clash_zones.mark_resolved([zones[1].guid], 102)
        ledger.snapshots.save_snapshot(SleeveSnapshotView(
            sleeve_instance_id=101, mep_parameters={"System Type": "Chilled Water"},
            clash_zone_guid=zones[0].guid,
        ))
        markable = ledger.clash_zones.get_markable_individuals("Pipes")
        assert [m.instance_id for m in markable] == [101, 102]
        assert markable[0].has_snapshot
        assert markable[0].mep_parameters == {"System Type": "Chilled Water"}
        assert not markable[1].has_snapshot
        assert markable[1].mep_parameters == {}

    def test_unplaced_zones_not_markable(self):
        ledger = create_ledger()
        ledger.clash_zones.save_clash_zones(make_zones(2))
        assert ledger.clash_zones.get_markable_individuals() == []

    def test_by_instance_ids(self):
        ledger = create_ledger()
        zones = make_zones(3)
        ledger.clash_zones.save_clash_zones(zones)
        ledger.clash_zones.mark_resolved([zones[0].guid], 101)
        ledger.clash_zones.mark_cluster_resolved([z.guid for z in zones[1:]], 500)
        assert ledger.clash_zones.get_by_sleeve_instance_id(101).guid == zones[0].guid
        assert ledger.clash_zones.get_by_sleeve_instance_id(999) is None
        assert len(ledger.clash_zones.get_by_cluster_instance_id(500)) == 2


def level_zone(i, category, level, host=2000):
    return ClashZone.detect(1000 + i, host, (float(i), 1.0, 2.0), category, level_name=level)


def marking_ledger():
    """
    Level 1: pipe a (sleeve 101), pipes b + c (cluster 500), duct e (sleeve
    201, then combined 900). Level 2: pipe d (sleeve 102).
    """
    ledger = create_ledger()
    a, b, c, d = (level_zone(i, "Pipes", "Level 1" if i < 3 else "Level 2") for i in range(4))
    e = level_zone(0, "Ducts", "Level 1", host=3000)
    ledger.clash_zones.save_clash_zones([a, b, c, d, e])
    ledger.clash_zones.mark_resolved([a.guid], 101)
    ledger.clash_zones.mark_resolved([d.guid], 102)
    ledger.clash_zones.mark_resolved([e.guid], 201)
    ledger.clash_zones.mark_combined_resolved([e.guid], 900)
    ledger.clusters.save_cluster(ClusterSleeve(1, 1, "Pipes", constituent_guids=[b.guid, c.guid],
                                               cluster_instance_id=500))
    ledger.snapshots.save_snapshot(SleeveSnapshotView(
        sleeve_instance_id=101, mep_parameters={"System Type": "Hot Water"},
    ))
    ledger.snapshots.save_snapshot(SleeveSnapshotView(
        source_type="Cluster", cluster_instance_id=500, mep_parameters={"System Type": "Chilled Water"},
    ))
    return ledger, dict(a=a, b=b, c=c, d=d, e=e)


class TestMarkingQueries:
    def test_level_persisted(self):
        ledger, zones = marking_ledger()
        assert ledger.clash_zones.get_clash_zone(zones['d'].guid).level_name == "Level 2"

    def test_markable_covers_every_tier(self):
        ledger, zones = marking_ledger()
        pipes = {m.guid: m for m in ledger.clash_zones.get_markable_clash_zones("Pipes")}
        assert set(pipes) == {zones[k].guid for k in "abcd"}
        assert pipes[zones['a'].guid].mep_parameters == {"System Type": "Hot Water"}
        assert pipes[zones['b'].guid].mep_parameters == {"System Type": "Chilled Water"}
        assert pipes[zones['b'].guid].target_instance_id == 500
        assert pipes[zones['d'].guid].mep_parameters == {}

        ducts = ledger.clash_zones.get_markable_clash_zones("Ducts")
        assert [m.guid for m in ducts] == [zones['e'].guid]
        assert ducts[0].is_combined
        assert ducts[0].target_instance_id == 900

    def test_cluster_snapshot_preferred_over_individual(self):
        ledger, zones = marking_ledger()
        ledger.clash_zones.mark_resolved([zones['b'].guid], 103)
        ledger.snapshots.save_snapshot(SleeveSnapshotView(
            sleeve_instance_id=103, mep_parameters={"System Type": "Individual"},
        ))
        pipes = {m.guid: m for m in ledger.clash_zones.get_markable_clash_zones("Pipes")}
        assert pipes[zones['b'].guid].mep_parameters == {"System Type": "Chilled Water"}

    def test_sleeves_for_level_exclude_combined(self):
        ledger, zones = marking_ledger()
        level_1 = ledger.clash_zones.get_sleeves_for_level("Level 1")
        assert {m.guid for m in level_1} == {zones[k].guid for k in "abc"}
        level_2 = ledger.clash_zones.get_sleeves_for_level("Level 2", "Pipes")
        assert [m.guid for m in level_2] == [zones['d'].guid]
        assert ledger.clash_zones.get_sleeves_for_level("Level 1", "Ducts") == []

    def test_sleeves_for_level_combined_pseudo_category(self):
        ledger, zones = marking_ledger()
        combined = ledger.clash_zones.get_sleeves_for_level("Level 1", "combined")
        assert [m.guid for m in combined] == [zones['e'].guid]
        assert ledger.clash_zones.get_sleeves_for_level("Level 2", "Combined") == []

    def test_category_lookup(self):
        ledger, zones = marking_ledger()
        ledger.clusters.save_cluster(ClusterSleeve(1, 1, "Ducts", cluster_instance_id=600))
        lookup = ledger.clash_zones.get_category_lookup([101, 500, 201, 600, 999, -1])
        assert lookup == {101: "Pipes", 500: "Pipes", 201: "Ducts", 600: "Ducts"}
        assert ledger.clash_zones.get_category_lookup([]) == {}

    def test_failures_degrade_to_empty(self):
        ledger, zones = marking_ledger()
        ledger.close()
        assert ledger.clash_zones.get_markable_clash_zones("Pipes") == []
        assert ledger.clash_zones.get_sleeves_for_level("Level 1") == []
        assert ledger.clash_zones.get_category_lookup([101]) == {}
