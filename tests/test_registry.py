import copy

import pytest

from livemonitor.registry.loader import RegistryLoadError, build_registry, load_registry
from livemonitor.registry.models import ItemKind


def test_packaged_contract_loads():
    reg = load_registry()

    assert [w.wave_id for w in reg.waves] == [1, 2, 3, 4]
    assert len(reg.groups) == 23
    assert reg.group("Canvas Blocks") is not None
    assert reg.group("Curriculum") is not None
    assert len(reg.patterns) >= 60
    # Every declared wave has derived items.
    assert all(w.items for w in reg.waves)


def test_wave_items_are_derived_from_groups_and_patterns(small_registry):
    w1 = small_registry.wave(1)
    assert [(i.kind, i.key) for i in w1.items] == [
        (ItemKind.ROUTE, "POST /auth/signin"),
        (ItemKind.ROUTE, "GET /auth/me"),
        (ItemKind.KV_PRIMARY, "user"),
    ]
    w2 = small_registry.wave(2)
    assert w2.items[-1].kind is ItemKind.KV_INDEX
    assert all(i.group_id == "Courses" for i in w2.items if i.kind is ItemKind.ROUTE)


def test_lookups(small_registry):
    assert small_registry.group_for_route("GET ${PREFIX}/courses/:courseId/").group_id == "Courses"
    assert small_registry.group_for_route("GET /nope") is None
    assert [g.group_id for g in small_registry.groups_for_owner("Dev B")] == ["Courses"]
    assert small_registry.pattern("course").owner == "Dev B"
    assert small_registry.owners() == ("Dev A", "Dev B")
    assert len(small_registry.items_for_owner("Dev B")) == 4
    assert small_registry.wave(99) is None


def test_to_dict_shape(small_registry):
    d = small_registry.to_dict()
    assert d["teams"][0] == {"id": "Dev A", "label": "Auth"}
    assert d["route_groups"][1]["routes"] == ["GET /courses", "GET /courses/:id"]


def _broken(small_contract, mutate):
    doc = copy.deepcopy(small_contract)
    mutate(doc)
    return doc


@pytest.mark.parametrize(
    "mutate,needle",
    [
        (lambda d: d["route_groups"].append(copy.deepcopy(d["route_groups"][0])), "duplicate route group"),
        (lambda d: d["kv_patterns"].append(copy.deepcopy(d["kv_patterns"][0])), "duplicate KV pattern"),
        (lambda d: d["waves"].append({"id": 1, "name": "again"}), "duplicate wave"),
        (lambda d: d["route_groups"][0].update(wave=7), "unknown wave"),
        (lambda d: d["kv_patterns"][0].update(wave=7), "unknown wave"),
        (lambda d: d["route_groups"][0].update(owner="Dev Z"), "undeclared team"),
        (lambda d: d["route_groups"][0].update(routes=[]), "no routes"),
        (lambda d: d["route_groups"][0]["probe"].update(method="TRACE"), "unsupported probe method"),
        (lambda d: d["route_groups"][0]["probe"].update(path="auth/me"), "must start with"),
        (lambda d: d["route_groups"][0]["routes"].append("/auth/me"), "malformed route"),
        (lambda d: d["route_groups"][1]["routes"].append("GET /auth/me/"), "declared in both"),
        (lambda d: d["kv_patterns"][0].update(kind="secondary"), "schema error"),
    ],
)
def test_build_registry_fails_fast(small_contract, mutate, needle):
    with pytest.raises(RegistryLoadError) as ei:
        build_registry(_broken(small_contract, mutate))
    assert needle in str(ei.value)


def test_non_mapping_contract_rejected():
    with pytest.raises(RegistryLoadError):
        build_registry(["not", "a", "mapping"])


def test_load_registry_reports_bad_yaml(tmp_path):
    p = tmp_path / "contract.yaml"
    p.write_text("teams: [unclosed\n", encoding="utf-8")
    with pytest.raises(RegistryLoadError):
        load_registry(p)


def test_load_registry_missing_file(tmp_path):
    with pytest.raises(RegistryLoadError):
        load_registry(tmp_path / "nope.yaml")
