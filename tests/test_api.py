"""
API Tests.

End-to-end through the FastAPI app: authentication, role checks, tenant
isolation, camelCase payloads and the shared error shape.
"""

import uuid

import pytest

from riskgov.db.models import MetricObservation

RISK = "/api/v1/risk-appetite"
SNAPSHOTS = "/api/v1/decision-snapshots"
STRESS = "/api/v1/risk-stress-test"
BOARD = "/api/v1/board-scenarios"


def _snapshot_body(**overrides):
    body = {
        "metricCode": "cash_today",
        "value": 1_250_000,
        "truthLevel": "settled",
        "authority": "BANK",
        "derivedFrom": {"sources": ["bank_statement"], "evidence": [{"ref": "stmt-42"}]},
    }
    body.update(overrides)
    return body


# ── Authentication / authorization ─────────────────────────────────────


class TestAuth:
    @pytest.mark.asyncio
    async def test_health_is_public(self, client_factory):
        async with client_factory() as c:
            resp = await c.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
        assert "X-Request-ID" in resp.headers

    @pytest.mark.asyncio
    async def test_missing_token(self, client_factory):
        async with client_factory() as c:
            resp = await c.get(f"{RISK}/evaluate")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "E2000"

    @pytest.mark.asyncio
    async def test_invalid_token(self, client_factory):
        async with client_factory("not-a-jwt") as c:
            resp = await c.get(f"{RISK}/evaluate")
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_viewer_cannot_detect(self, client_factory, viewer_token):
        async with client_factory(viewer_token) as c:
            resp = await c.post(f"{RISK}/detect")
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "E2002"

    @pytest.mark.asyncio
    async def test_analyst_cannot_resolve(self, client_factory, analyst_token):
        async with client_factory(analyst_token) as c:
            resp = await c.post(f"{RISK}/resolve", json={"breachId": str(uuid.uuid4())})
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_tenant_param_must_match_token(self, client, tenant_b):
        resp = await client.get(f"{RISK}/evaluate", params={"tenantId": str(tenant_b.id)})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "E2001"

    @pytest.mark.asyncio
    async def test_matching_tenant_param_allowed(self, client, tenant_a):
        resp = await client.get(f"{RISK}/evaluate", params={"tenantId": str(tenant_a.id)})
        assert resp.status_code == 200


# ── Risk appetite ───────────────────────────────────────────────────────


class TestRiskAppetite:
    @pytest.mark.asyncio
    async def test_evaluate_without_appetite_is_camel_case(self, client):
        resp = await client.get(f"{RISK}/evaluate")
        assert resp.status_code == 200
        body = resp.json()
        assert body["hasActiveAppetite"] is False
        assert body["breachCount"] == 0
        assert "evaluatedAt" in body

    @pytest.mark.asyncio
    async def test_appetite_lifecycle(self, client):
        resp = await client.post(f"{RISK}/appetites", json={
            "name": "FY26",
            "rules": [{
                "riskDomain": "reconciliation",
                "metricCode": "false_auto_rate",
                "operator": ">",
                "threshold": 5,
                "actionOnBreach": "BLOCK_AUTOMATION",
            }],
        })
        assert resp.status_code == 201
        draft = resp.json()
        assert draft["status"] == "draft"
        assert draft["version"] == 1
        assert draft["rules"][0]["actionOnBreach"] == "BLOCK_AUTOMATION"

        resp = await client.get(f"{RISK}/appetites/active")
        assert resp.status_code == 404

        resp = await client.post(f"{RISK}/appetites/{draft['id']}/activate")
        assert resp.status_code == 200
        assert resp.json()["status"] == "active"

        resp = await client.get(f"{RISK}/appetites/active")
        assert resp.json()["id"] == draft["id"]

    @pytest.mark.asyncio
    async def test_unknown_metric_rejected(self, client):
        resp = await client.post(f"{RISK}/appetites", json={
            "name": "Bad",
            "rules": [{"riskDomain": "x", "metricCode": "nope", "operator": ">", "threshold": 1}],
        })
        assert resp.status_code == 400
        assert resp.json()["error"]["field"] == "rules"

    @pytest.mark.asyncio
    async def test_detect_and_resolve(self, client_factory, analyst_token, manager_token, tenant_a, data, make_rule):
        await data.outcomes(tenant_a.id, "AUTO_CONFIRMED", 100)
        await data.outcomes(tenant_a.id, "FALSE_AUTO", 3)
        await data.active_appetite(tenant_a.id, [make_rule("false_auto_rate", ">", 2)])

        async with client_factory(analyst_token) as c:
            resp = await c.post(f"{RISK}/detect")
            assert resp.status_code == 200
            detected = resp.json()
            assert detected["detected"] is True
            assert len(detected["newBreaches"]) == 1
            breach_id = detected["newBreaches"][0]["breachId"]

            again = (await c.post(f"{RISK}/detect")).json()
            assert again["newBreaches"] == []

        async with client_factory(manager_token) as c:
            resp = await c.post(f"{RISK}/resolve", json={"breachId": breach_id, "resolution": "matcher retrained"})
            assert resp.status_code == 200
            assert resp.json()["isResolved"] is True
            assert resp.json()["resolutionNotes"] == "matcher retrained"

            resp = await c.post(f"{RISK}/resolve", json={"breachId": breach_id})
            assert resp.status_code == 400

            open_breaches = (await c.get(f"{RISK}/breaches", params={"unresolved": "true"})).json()
            assert open_breaches["breaches"] == []

    @pytest.mark.asyncio
    async def test_impact_preview(self, client, tenant_a, data):
        await data.outcomes(tenant_a.id, "AUTO_CONFIRMED", 100)
        await data.outcomes(tenant_a.id, "FALSE_AUTO", 3)

        resp = await client.get(
            f"{RISK}/impact-preview",
            params={"metricCode": "false_auto_rate", "threshold": 2, "operator": ">"},
        )
        assert resp.status_code == 200
        assert resp.json()["wouldBreach"] is True

    @pytest.mark.asyncio
    async def test_metric_catalog(self, client):
        resp = await client.get(f"{RISK}/metrics")
        assert "false_auto_rate" in resp.json()["metrics"]


# ── Fact ledger ─────────────────────────────────────────────────────────


class TestSnapshots:
    @pytest.mark.asyncio
    async def test_create_and_read(self, client):
        resp = await client.post(f"{SNAPSHOTS}/snapshots", json=_snapshot_body())
        assert resp.status_code == 201
        created = resp.json()
        assert created["confidence"] == 100.0
        assert created["truthLevel"] == "settled"

        latest = (await client.get(f"{SNAPSHOTS}/latest", params={"metricCode": "cash_today"})).json()
        assert latest["id"] == created["id"]

        explained = (await client.get(f"{SNAPSHOTS}/explain/{created['id']}")).json()
        assert explained["formatted"]["sources"] == ["bank_statement"]

    @pytest.mark.asyncio
    async def test_invalid_pairing_writes_nothing(self, client, data):
        resp = await client.post(f"{SNAPSHOTS}/snapshots", json=_snapshot_body(authority="RULE"))
        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "E1001"
        assert error["field"] == "authority"
        assert await data.count(MetricObservation) == 0

    @pytest.mark.asyncio
    async def test_viewer_cannot_write(self, client_factory, viewer_token):
        async with client_factory(viewer_token) as c:
            resp = await c.post(f"{SNAPSHOTS}/snapshots", json=_snapshot_body())
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_lineage(self, client):
        first = (await client.post(f"{SNAPSHOTS}/snapshots", json=_snapshot_body(value=100))).json()
        second = (await client.post(
            f"{SNAPSHOTS}/snapshots", json=_snapshot_body(value=110, supersedesId=first["id"])
        )).json()

        resp = await client.get(f"{SNAPSHOTS}/lineage/{second['id']}")
        body = resp.json()
        assert body["depth"] == 2
        assert [s["id"] for s in body["chain"]] == [second["id"], first["id"]]

    @pytest.mark.asyncio
    async def test_latest_missing_is_404(self, client):
        resp = await client.get(f"{SNAPSHOTS}/latest", params={"metricCode": "cash_today"})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "E1002"

    @pytest.mark.asyncio
    async def test_check_stale(self, client):
        resp = await client.get(f"{SNAPSHOTS}/check-stale")
        body = resp.json()
        assert body["isStale"] is True
        assert set(body["missingMetrics"]) == {"cash_today", "cash_flow_today", "cash_next_7d"}

    @pytest.mark.asyncio
    async def test_cross_tenant_explain(self, client_factory, tenant_b_admin_token, tenant_a, data):
        snapshot_id = await data.settled(tenant_a.id, "cash_today", 10)
        async with client_factory(tenant_b_admin_token) as c:
            resp = await c.get(f"{SNAPSHOTS}/explain/{snapshot_id}")
        assert resp.status_code == 403


# ── Simulations ─────────────────────────────────────────────────────────


class TestSimulations:
    @pytest.mark.asyncio
    async def test_stress_test_requires_appetite(self, client):
        resp = await client.post(f"{STRESS}/simulate", json={
            "simulatedChanges": [{"metricCode": "false_auto_rate", "simulatedThreshold": 2}],
        })
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "E4000"

    @pytest.mark.asyncio
    async def test_stress_test_flow(self, client, client_factory, tenant_b_admin_token, tenant_a, data, make_rule):
        await data.outcomes(tenant_a.id, "AUTO_CONFIRMED", 100)
        await data.outcomes(tenant_a.id, "FALSE_AUTO", 3)
        await data.active_appetite(tenant_a.id, [make_rule("false_auto_rate", ">", 5)])

        changes = {"simulatedChanges": [{"metricCode": "false_auto_rate", "simulatedThreshold": 2}]}
        preview = (await client.post(f"{STRESS}/preview", json=changes)).json()
        assert preview["newBreaches"] == 1

        resp = await client.post(f"{STRESS}/simulate", json=changes)
        assert resp.status_code == 200
        result = resp.json()
        assert result["impactSummary"]["autoReconciliationRate"]["isEstimate"] is True
        assert result["detailedImpacts"][0]["impactType"] == "new_breach"

        history = (await client.get(f"{STRESS}/history")).json()
        assert [t["id"] for t in history["tests"]] == [result["testId"]]

        async with client_factory(tenant_b_admin_token) as c:
            resp = await c.get(f"{STRESS}/{result['testId']}")
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_board_scenario_flow(self, client, tenant_a, data):
        await data.settled(tenant_a.id, "cash_today", 1_000_000)
        await data.invoices(tenant_a.id, [1_000_000])
        await data.bills(tenant_a.id, [900_000])

        ids = []
        for name, change in (("Mild", -10), ("Severe", -50)):
            resp = await client.post(f"{BOARD}/simulate", json={
                "scenarioName": name,
                "scenarioType": "REVENUE_SHOCK",
                "assumptions": {"revenueChange": change},
            })
            assert resp.status_code == 200
            body = resp.json()
            assert body["truthLevel"] == "simulated"
            assert body["isSimulation"] is True
            ids.append(body["scenarioId"])

        comparison = (await client.get(f"{BOARD}/compare", params={"ids": ",".join(ids)})).json()
        assert comparison["comparison"]["Monthly Revenue"]["Severe"] == 500_000

        resp = await client.get(f"{BOARD}/compare", params={"ids": ids[0]})
        assert resp.status_code == 400

        resp = await client.get(f"{BOARD}/compare", params={"ids": "a,b"})
        assert resp.status_code == 400

        resp = await client.post(f"{BOARD}/archive", json={"scenarioId": ids[0]})
        assert resp.json()["isArchived"] is True

        listed = (await client.get(f"{BOARD}/list")).json()
        assert [s["id"] for s in listed["scenarios"]] == [ids[1]]

    @pytest.mark.asyncio
    async def test_board_templates(self, client):
        resp = await client.get(f"{BOARD}/templates")
        templates = resp.json()["templates"]
        assert len(templates) == 4
        assert templates[0]["defaultAssumptions"] == {"revenueChange": -20}

    @pytest.mark.asyncio
    async def test_request_validation_uses_error_shape(self, client):
        resp = await client.post(f"{BOARD}/simulate", json={"scenarioType": "REVENUE_SHOCK"})
        assert resp.status_code == 400
        body = resp.json()
        assert body["error"]["code"] == "E1001"
        assert body["error"]["field"] == "scenarioName"
