"""
Tests for deterministic identity
"""

import random
import uuid

import pytest

from sleeve_ledger.identity import (
    canonical_string,
    clash_zone_guid,
    compute_cluster_identity,
    compute_combined_identity,
    constituent_key,
    is_best_effort_identity,
    round_point,
)


def make_guids(n, seed=7):
    rng = random.Random(seed)
    return [str(uuid.UUID(int=rng.getrandbits(128))) for _ in range(n)]


class TestClusterIdentity:
    def test_order_independent(self):
        guids = make_guids(12)
        expected = compute_cluster_identity(guids)
        rng = random.Random(1)
        for _ in range(20):
            shuffled = guids[:]
            rng.shuffle(shuffled)
            assert compute_cluster_identity(shuffled) == expected

    def test_sensitive_to_added_member(self):
        guids = make_guids(5)
        extra = make_guids(1, seed=99)[0]
        assert compute_cluster_identity(guids) != compute_cluster_identity(guids + [extra])

    def test_sensitive_to_removed_member(self):
        guids = make_guids(5)
        assert compute_cluster_identity(guids) != compute_cluster_identity(guids[:-1])

    def test_empty_set_has_no_identity(self):
        assert compute_cluster_identity([]) is None
        assert compute_cluster_identity(["", None, "  "]) is None

    def test_duplicates_ignored(self):
        guids = make_guids(3)
        assert compute_cluster_identity(guids + [guids[0]]) == compute_cluster_identity(guids)

    def test_case_and_braces_normalized(self):
        guids = make_guids(3)
        variants = ["{" + g.upper() + "}" for g in guids]
        assert compute_cluster_identity(variants) == compute_cluster_identity(guids)

    def test_result_is_uppercase_guid(self):
        result = compute_cluster_identity(make_guids(2))
        assert result == result.upper()
        assert str(uuid.UUID(result)).upper() == result

    def test_accepts_uuid_objects(self):
        guids = make_guids(3)
        assert compute_cluster_identity([uuid.UUID(g) for g in guids]) == compute_cluster_identity(guids)


class TestCombinedIdentity:
    def test_constituent_keys(self):
        g = make_guids(1)[0]
        assert constituent_key("Individual", clash_zone_guid=g) == "I:" + g.upper()
        assert constituent_key("Cluster", cluster_instance_id=42) == "C:42"
        assert constituent_key("Cluster", cluster_instance_id=-1, cluster_db_id=7) == "C_DB:7"
        assert constituent_key("Cluster") is None
        assert constituent_key("Individual") is None

    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError):
            constituent_key("Duct", clash_zone_guid="x")

    def test_order_independent(self):
        keys = ["I:" + g.upper() for g in make_guids(4)] + ["C:10", "C:11"]
        reversed_keys = list(reversed(keys))
        assert compute_combined_identity(keys) == compute_combined_identity(reversed_keys)

    def test_sensitive(self):
        keys = ["I:A", "I:B", "C:3"]
        base = compute_combined_identity(keys)
        assert base != compute_combined_identity(keys + ["C:4"])
        assert base != compute_combined_identity(keys[:-1])

    def test_individual_and_cluster_keys_do_not_collide(self):
        assert compute_combined_identity(["I:5"]) != compute_combined_identity(["C:5"])

    def test_unkeyed_constituents_dropped(self):
        assert compute_combined_identity(["I:A", None]) == compute_combined_identity(["I:A"])
        assert compute_combined_identity([None, None]) is None
        assert compute_combined_identity([]) is None

    def test_sha256_hex(self):
        result = compute_combined_identity(["I:A", "C:1"])
        assert len(result) == 64
        int(result, 16)

    def test_best_effort_flag(self):
        assert is_best_effort_identity(["I:A", "C_DB:3"])
        assert not is_best_effort_identity(["I:A", "C:3"])


class TestClashZoneGuid:
    def test_stable_below_rounding(self):
        a = clash_zone_guid(100, 200, (1.0001, 2.0, 3.0))
        b = clash_zone_guid(100, 200, (1.0002, 2.0, 3.0))
        assert a == b

    def test_differs_by_element(self):
        point = (1.0, 2.0, 3.0)
        assert clash_zone_guid(100, 200, point) != clash_zone_guid(101, 200, point)
        assert clash_zone_guid(100, 200, point) != clash_zone_guid(100, 201, point)

    def test_differs_by_point(self):
        assert clash_zone_guid(1, 2, (0, 0, 0)) != clash_zone_guid(1, 2, (0.01, 0, 0))

    def test_negative_zero_folded(self):
        assert clash_zone_guid(1, 2, (-0.0001, 0, 0)) == clash_zone_guid(1, 2, (0.0, 0, 0))

    def test_round_point_shape(self):
        assert list(round_point((1.23456, 2, 3))) == [1.235, 2.0, 3.0]
        with pytest.raises(ValueError):
            round_point((1, 2))

    def test_canonical_string_sorted(self):
        assert canonical_string(["b", "a", "b"]) == "a|b"
