import pytest

from livemonitor.codescan.index import CodePresenceIndex, parse_code_scan
from livemonitor.kv.audit_client import KvAuditSnapshot
from livemonitor.probe.prober import ProbeResult, RouteState, classify_status
from livemonitor.reconcile.engine import AlertKind, AutoStatus, KvLiveness, auto_status, pct, reconcile
from livemonitor.registry.loader import build_registry


def _probe(registry, group_id: str, code: int) -> ProbeResult:
    g = registry.group(group_id)
    return ProbeResult(target=g.probe, group_id=g.group_id, owner=g.owner, http_status=code, latency_ms=5, state=classify_status(code))


def _one_route_registry():
    return build_registry(
        {
            "teams": [{"id": "Dev 6"}],
            "waves": [{"id": 1, "name": "Oleada 1"}],
            "route_groups": [
                {"id": "Auth", "owner": "Dev 6", "wave": 1, "probe": {"path": "/auth/me"}, "routes": ["GET /auth/me"]},
            ],
        }
    )


@pytest.mark.parametrize(
    "part,total,expected",
    [(0, 0, 0), (0, 5, 0), (5, 5, 100), (1, 3, 33), (2, 3, 67), (1, 2, 50), (1, 8, 13), (1, 200, 1), (1, 201, 0)],
)
def test_pct_rounds_half_up(part, total, expected):
    assert pct(part, total) == expected


def test_auto_status_priority():
    assert auto_status(100, 100, live_tracking=True) == (AutoStatus.FULLY_LIVE, "LIVE 100%")
    assert auto_status(100, 40, live_tracking=True) == (AutoStatus.PARTIALLY_LIVE, "LIVE 40%")
    # In code but nothing live: code status, never a live one.
    assert auto_status(100, 0, live_tracking=True) == (AutoStatus.COMPLETE_IN_CODE, "COMPLETE")
    assert auto_status(60, 0, live_tracking=True) == (AutoStatus.IN_PROGRESS, "60%")
    assert auto_status(0, 0, live_tracking=True) == (AutoStatus.PENDING, "PENDING")
    # Live axis ignored when tracking is off.
    assert auto_status(50, 100, live_tracking=False) == (AutoStatus.IN_PROGRESS, "50%")


def test_scenario_a_auth_required_counts_as_live():
    reg = _one_route_registry()
    report = reconcile(reg, [_probe(reg, "Auth", 401)], CodePresenceIndex.empty(), KvAuditSnapshot.from_counts({}))

    w = report.wave(1)
    assert w.live_pct == 100
    assert w.stats.auto_status is AutoStatus.FULLY_LIVE
    assert w.items[0].probe_state is RouteState.AUTH_REQUIRED
    assert [a.kind for a in w.alerts] == [AlertKind.FULLY_VERIFIED]


def test_scenario_b_in_code_not_live_is_ready_to_deploy():
    reg = _one_route_registry()
    code = parse_code_scan({"detectedRoutes": ["GET ${PREFIX}/auth/me"]})
    report = reconcile(reg, [_probe(reg, "Auth", 404)], code, KvAuditSnapshot.from_counts({}))

    w = report.wave(1)
    assert (w.code_pct, w.live_pct) == (100, 0)
    assert w.stats.auto_status is AutoStatus.COMPLETE_IN_CODE
    assert w.alerts[0].kind is AlertKind.READY_TO_DEPLOY
    assert w.alerts[0].items == ("GET /auth/me",)


def test_scenario_c_failed_audit_is_unknown_not_empty(small_registry):
    report = reconcile(small_registry, [], CodePresenceIndex.empty(), KvAuditSnapshot.unavailable("timeout"))

    course = next(i for i in report.wave(2).items if i.item.key == "course")
    assert course.kv_liveness is KvLiveness.UNKNOWN
    assert course.kv_count is None
    assert course.is_live is False
    assert AlertKind.AUDIT_UNAVAILABLE in {a.kind for a in report.wave(2).alerts}

    ok = reconcile(small_registry, [], CodePresenceIndex.empty(), KvAuditSnapshot.from_counts({"course": 0}))
    course = next(i for i in ok.wave(2).items if i.item.key == "course")
    assert course.kv_liveness is KvLiveness.EMPTY
    assert course.kv_count == 0


def test_missing_probe_means_pending_not_live(small_registry):
    report = reconcile(small_registry, [], CodePresenceIndex.empty(), KvAuditSnapshot.from_counts({}))
    for s in report.wave(1).items:
        if s.probe_state is not None:
            assert s.probe_state is RouteState.PENDING
            assert s.is_live is False
    assert report.totals.live_pct == 0
    assert report.totals.auto_status is AutoStatus.PENDING


def test_partial_deployment_and_owner_rollups(small_registry):
    probes = [_probe(small_registry, "Auth", 200), _probe(small_registry, "Courses", 503)]
    code = parse_code_scan(
        {
            "detectedRoutes": ["POST /auth/signin", "GET /auth/me", "GET /courses"],
            "detectedKvPrefixes": ["user:", "course"],
            "perFileRoutes": [
                {"file": "routes-auth.tsx", "owner": "Dev A", "routes": ["GET /auth/me"]},
                {"file": "routes-content.tsx", "owner": "Dev B", "routes": ["GET /courses", "GET /auth/me"]},
            ],
        }
    )
    kv = KvAuditSnapshot.from_counts({"user": 3, "course": 0})

    report = reconcile(small_registry, probes, code, kv)

    w1 = report.wave(1)
    assert (w1.stats.in_code, w1.stats.live, w1.stats.total) == (3, 3, 3)
    assert w1.stats.auto_status is AutoStatus.FULLY_LIVE

    w2 = report.wave(2)
    # GET /courses + course prefix in code; nothing live.
    assert (w2.stats.in_code, w2.stats.live, w2.stats.total) == (2, 0, 4)
    assert w2.stats.auto_status is AutoStatus.IN_PROGRESS
    assert w2.alerts[0].kind is AlertKind.READY_TO_DEPLOY
    assert set(w2.alerts[0].items) == {"GET /courses", "course"}

    assert report.totals.live == 3
    assert report.groups_alive == 1
    assert report.endpoints_alive == 2
    assert report.waves_live == 1
    assert report.waves_in_code == 1

    dev_b = report.owner("Dev B")
    assert dev_b.stats.total == 4
    assert [wid for wid, _ in dev_b.waves] == [2]
    # Owner items are the same objects the waves hold.
    assert dev_b.items[0] is w2.items[0]

    assert dict((o, rs) for o, rs in report.unmatched_by_owner) == {"Dev B": ("GET /courses/:id",)}
    assert [(d.file, d.dead_groups, d.live_groups) for d in report.deploy_checklist] == [
        ("routes-content.tsx", ("Courses",), ("Auth",)),
    ]


def test_live_tracking_off_uses_code_axis_only(small_registry):
    code = parse_code_scan({"detectedRoutes": ["POST /auth/signin", "GET /auth/me"], "detectedKvPrefixes": ["user"]})
    probes = [_probe(small_registry, "Auth", 200)]

    report = reconcile(small_registry, probes, code, KvAuditSnapshot.from_counts({}), live_tracking=False)

    w1 = report.wave(1)
    assert w1.stats.auto_status is AutoStatus.COMPLETE_IN_CODE
    assert [a.kind for a in w1.alerts] == [AlertKind.CODE_COMPLETE]
    assert report.deploy_checklist == ()


def test_not_loaded_code_index_means_nothing_in_code(small_registry):
    report = reconcile(small_registry, [], CodePresenceIndex.empty(), KvAuditSnapshot.from_counts({}))
    assert report.totals.in_code == 0
    assert report.code_scan_loaded is False


def test_empty_wave_is_zero_not_an_error():
    reg = build_registry({"teams": [{"id": "T"}], "waves": [{"id": 1, "name": "empty"}]})
    report = reconcile(reg, [], CodePresenceIndex.empty(), KvAuditSnapshot.from_counts({}))
    w = report.wave(1)
    assert (w.code_pct, w.live_pct, w.stats.total) == (0, 0, 0)
    assert w.stats.auto_status is AutoStatus.PENDING
    assert report.waves_live == 0


def test_reconcile_is_deterministic(small_registry):
    probes = [_probe(small_registry, "Auth", 401), _probe(small_registry, "Courses", 404)]
    code = parse_code_scan({"detectedRoutes": ["GET /courses", "GET /extra"], "detectedKvPrefixes": ["course"]})
    kv = KvAuditSnapshot.from_counts({"course": 2})

    a = reconcile(small_registry, probes, code, kv).to_dict()
    b = reconcile(small_registry, list(reversed(probes)), code, kv).to_dict()
    assert a == b
    assert a["code_readiness"]["undocumented"] == ["GET /extra"]
