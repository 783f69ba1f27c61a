"""Tests for the fraud detection REST API."""

import pytest
from fastapi.testclient import TestClient

from schemas.fraud_schemas import IdentityType
from serving.fraud_api import app, get_evaluator, get_session

ALWAYS = [{"feature": "order_amount", "op": "exists"}]


@pytest.fixture
def client(session, evaluator):
    def override_session():
        yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_evaluator] = lambda: evaluator
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


class TestHealth:

    def test_health_check(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "database": True}


class TestAnalysis:

    def test_analyze_order(self, client, make_order, make_rule):
        rule = make_rule("high", ALWAYS, 70)
        order = make_order()

        response = client.post(f"/fraud/analyze/{order.id}")

        assert response.status_code == 200
        data = response.json()
        assert data["orderId"] == order.id
        assert data["totalScore"] == 70
        assert data["riskLevel"] == "high"
        assert data["status"] == "under_review"
        assert data["recommendedAction"] == "review"
        assert data["triggeredRules"] == [rule.id]

    def test_analyze_missing_order(self, client):
        response = client.post("/fraud/analyze/999")
        assert response.status_code == 404
        assert "999" in response.json()["detail"]

    def test_bulk_route_is_not_an_order_id(self, client, make_order):
        first, second = make_order(), make_order()
        response = client.post("/fraud/analyze/bulk", json={"orderIds": [first.id, second.id, 999]})

        assert response.status_code == 200
        data = response.json()
        assert data["analyzed"] == 2
        assert data["results"] == {str(first.id): "minimal", str(second.id): "minimal"}

    def test_bulk_requires_ids(self, client):
        assert client.post("/fraud/analyze/bulk", json={"orderIds": []}).status_code == 422

    def test_reanalyze(self, client, make_order):
        order = make_order()
        client.post(f"/fraud/analyze/{order.id}")
        response = client.post(f"/fraud/reanalyze/{order.id}")
        assert response.status_code == 200
        assert response.json()["orderId"] == order.id

    def test_get_score(self, client, make_order, make_rule):
        make_rule("medium", ALWAYS, 45, rule_type="pattern")
        order = make_order()
        client.post(f"/fraud/analyze/{order.id}")

        response = client.get(f"/fraud/score/{order.id}")
        assert response.status_code == 200
        data = response.json()
        assert data["risk_level"] == "medium"
        assert data["recommended_action"] == "flag"
        assert data["triggered_rules"][0]["name"] == "medium"

    def test_get_score_before_analysis(self, client, make_order):
        assert client.get(f"/fraud/score/{make_order().id}").status_code == 404


class TestReviews:

    @pytest.fixture
    def score_id(self, client, make_order, make_rule):
        make_rule("high", ALWAYS, 70)
        return client.post(f"/fraud/analyze/{make_order().id}").json()["fraudScoreId"]

    def test_pending_reviews(self, client, score_id):
        response = client.get("/fraud/pending-reviews")
        assert response.status_code == 200
        assert [item["id"] for item in response.json()] == [score_id]

    def test_approve(self, client, score_id):
        response = client.post(f"/fraud/approve/{score_id}", json={"reviewerId": 3})
        assert response.status_code == 200
        assert response.json()["status"] == "approved"
        assert response.json()["reviewed_by"] == 3

    def test_reject_requires_notes(self, client, score_id):
        assert client.post(f"/fraud/reject/{score_id}", json={"reviewerId": 3}).status_code == 422

        response = client.post(f"/fraud/reject/{score_id}", json={"reviewerId": 3, "notes": "Stolen card"})
        assert response.status_code == 200
        assert response.json()["status"] == "rejected"

    def test_false_positive(self, client, score_id):
        response = client.post(f"/fraud/false-positive/{score_id}", json={"reviewerId": 3})
        assert response.json()["false_positive"] is True

    def test_review_missing_score(self, client):
        assert client.post("/fraud/approve/404", json={"reviewerId": 3}).status_code == 404


class TestRules:

    RULE = {
        "name": "Large digital basket",
        "rule_type": "pattern",
        "conditions": {
            "match": "all",
            "predicates": [
                {"feature": "all_digital", "op": "is_true"},
                {"feature": "order_amount", "op": ">", "value": 300},
            ],
        },
        "risk_score": 25,
        "action": "review",
    }

    def test_create_and_list(self, client):
        created = client.post("/fraud/rules", json=self.RULE)
        assert created.status_code == 201
        assert created.json()["name"] == "Large digital basket"

        listed = client.get("/fraud/rules", params={"type": "pattern", "active": True})
        assert [rule["id"] for rule in listed.json()] == [created.json()["id"]]
        assert client.get("/fraud/rules", params={"type": "velocity"}).json() == []

    def test_invalid_operator_is_rejected(self, client):
        body = {**self.RULE, "conditions": {"predicates": [{"feature": "x", "op": "like"}]}}
        assert client.post("/fraud/rules", json=body).status_code == 422

    def test_update(self, client):
        rule_id = client.post("/fraud/rules", json=self.RULE).json()["id"]
        response = client.put(f"/fraud/rules/{rule_id}", json={"risk_score": 35, "is_active": False})
        assert response.status_code == 200
        assert response.json()["risk_score"] == 35
        assert response.json()["is_active"] is False

    def test_update_missing_rule(self, client):
        assert client.put("/fraud/rules/404", json={"risk_score": 35}).status_code == 404


class TestBlacklist:

    def test_add_and_remove(self, client, evaluator):
        response = client.post(
            "/fraud/blacklist",
            json={"type": "email", "value": "Fraudster@Example.com", "reason": "Chargebacks", "severity": "high"},
        )
        assert response.status_code == 201
        data = response.json()
        assert data["type"] == "email"
        assert data["severity"] == "high"
        assert data["isActive"] is True
        assert evaluator.blacklist.get(IdentityType.EMAIL, "fraudster@example.com") is not None

        removed = client.delete("/fraud/blacklist/email/fraudster@example.com")
        assert removed.status_code == 200
        assert client.delete("/fraud/blacklist/email/fraudster@example.com").status_code == 404

    def test_blacklisted_order_is_blocked(self, client, make_order):
        client.post("/fraud/blacklist", json={"type": "ip", "value": "203.0.113.10", "reason": "Bot farm"})
        data = client.post(f"/fraud/analyze/{make_order().id}").json()
        assert data["totalScore"] == 100
        assert data["recommendedAction"] == "block"


class TestAnalytics:

    def test_analytics(self, client, make_order):
        client.post(f"/fraud/analyze/{make_order().id}")
        response = client.get("/fraud/analytics", params={"days": 7})
        assert response.status_code == 200
        data = response.json()
        assert data["period_days"] == 7
        assert data["scores"]["total_analyzed"] == 1
        assert set(data) == {"period_days", "scores", "attempts", "blacklist", "top_rules", "velocity"}
