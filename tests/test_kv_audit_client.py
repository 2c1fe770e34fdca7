import asyncio

import httpx

from livemonitor.kv.audit_client import KvAuditClient, KvAuditSnapshot, parse_audit

BASE = "https://srv.example.test/functions/v1/make-server-diag"


def _audit_payload(**overrides) -> dict:
    body = {
        "success": True,
        "tableExists": True,
        "summary": {"total": 12, "primaries": 9, "indices": 3, "unknown": 0, "score": 90},
        "devProgress": [
            {"dev": "Dev 1", "patternsDetail": [{"pattern": "course", "count": 4}, {"pattern": "semester", "count": 0}]},
        ],
        "keyPatterns": {"recognized": [{"pattern": "course", "count": 5}, {"pattern": "user", "count": 7}]},
        "alerts": [{"severity": "warning", "category": "integrity", "title": "orphan index"}],
        "indexIntegrity": [{"indexKey": "idx:inst-courses:1", "referencedPrimary": "course:9", "exists": False}],
    }
    body.update(overrides)
    return body


def test_parse_audit_prefers_recognized_counts():
    snap = parse_audit(_audit_payload())

    assert snap.available is True
    assert snap.count_for("course") == 5
    assert snap.count_for("user") == 7
    assert snap.count_for("semester") == 0
    assert snap.count_for("never-seen") == 0
    assert snap.summary.total == 12
    assert snap.to_dict()["broken_indices"] == ["idx:inst-courses:1"]


def test_parse_audit_success_false_is_unavailable():
    snap = parse_audit({"success": False, "error": "table missing"})
    assert snap.available is False
    assert snap.error == "table missing"


def test_parse_audit_rejects_non_object():
    assert parse_audit([1, 2]).available is False


def test_unavailable_snapshot_counts_are_unknown_not_zero():
    snap = KvAuditSnapshot.unavailable("boom")
    # count_for still answers 0, but the flag says it cannot be trusted.
    assert snap.count_for("course") == 0
    assert snap.available is False


def test_fetch_snapshot_http_error_is_in_band(make_client):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="oops")

    kv = KvAuditClient(BASE, client=make_client(handler))
    snap = asyncio.run(kv.fetch_snapshot())

    assert snap.available is False
    assert "HTTP 500" in snap.error


def test_fetch_snapshot_ok(make_client):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/audit")
        return httpx.Response(200, json=_audit_payload())

    kv = KvAuditClient(BASE, client=make_client(handler))
    snap = asyncio.run(kv.fetch_snapshot())
    assert snap.available is True
    assert snap.count_for("course") == 5


def test_health_ok_and_timeout(make_client):
    def ok(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": "ok", "prefix": "diag", "kvTable": "kv_store_diag", "tableExists": True})

    def slow(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("slow", request=request)

    h = asyncio.run(KvAuditClient(BASE, client=make_client(ok)).health())
    assert h.ok is True
    assert h.kv_table == "kv_store_diag"
    assert h.table_exists is True

    h2 = asyncio.run(KvAuditClient(BASE, client=make_client(slow)).health())
    assert h2.ok is False
    assert h2.timed_out is True


def test_health_degraded_status_is_not_ok(make_client):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": "degraded"})

    h = asyncio.run(KvAuditClient(BASE, client=make_client(handler)).health())
    assert h.ok is False
    assert h.timed_out is False


def test_browse_passes_prefix(make_client):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["prefix"] = request.url.params.get("prefix")
        return httpx.Response(200, json={"success": True, "items": [{"key": "course:1", "value": {"name": "A"}}]})

    res = asyncio.run(KvAuditClient(BASE, client=make_client(handler)).browse("course:"))
    assert seen["prefix"] == "course:"
    assert res.ok is True
    assert res.count == 1
    assert res.items[0]["key"] == "course:1"


def test_browse_transport_failure(make_client):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    res = asyncio.run(KvAuditClient(BASE, client=make_client(handler)).browse())
    assert res.ok is False
    assert res.count == 0


def test_parse_audit_keeps_diagnostic_sections():
    snap = parse_audit(
        _audit_payload(
            devProgress=[
                {
                    "dev": "Dev 1",
                    "totalKeys": 9,
                    "primaries": 6,
                    "indices": 3,
                    "sampleKeys": ["course:1"],
                    "expectedPatterns": 3,
                    "populatedPatterns": 2,
                    "patternsDetail": [{"pattern": "course", "count": 4}],
                }
            ],
            keyPatterns={
                "recognized": [{"pattern": "course", "count": 5}],
                "unknown": [{"key": "cours:7", "suggestion": "course"}],
            },
            dataShapeIssues=[{"key": "course:1", "entity": "Course", "missing": ["name"], "extra": ["nmae"]}],
            entityDetails=[
                {
                    "pattern": "course",
                    "count": 5,
                    "dev": "Dev 1",
                    "entity": "Course",
                    "samples": [{"key": "course:1", "valuePreview": "{\"nmae\":\"A\"}"}],
                }
            ],
        )
    )

    assert snap.unknown_keys[0].suggestion == "course"
    assert snap.data_shape_issues[0].missing == ["name"]
    assert snap.entity_details[0].samples[0].key == "course:1"

    progress = snap.progress_for("Dev 1")
    assert progress.totalKeys == 9
    assert progress.populated_pct == 67
    assert snap.progress_for("Dev 9") is None

    d = snap.to_dict()
    assert d["unknown_keys"] == [{"key": "cours:7", "suggestion": "course"}]
    assert d["data_shape_issues"][0]["extra"] == ["nmae"]
    assert d["entity_details"][0]["entity"] == "Course"
    assert d["dev_progress"][0]["totalKeys"] == 9
    assert d["dev_progress"][0]["populatedPct"] == 67


def test_parse_audit_sections_default_to_empty():
    d = parse_audit({"success": True}).to_dict()
    assert d["unknown_keys"] == []
    assert d["data_shape_issues"] == []
    assert d["entity_details"] == []
    assert d["dev_progress"] == []
