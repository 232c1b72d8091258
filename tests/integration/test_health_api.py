"""
Integration tests for the health endpoints.
"""

from dataclasses import replace


class TestHealth:

    def test_basic_health(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_firebase_health_reads_store(self, client, db):
        response = client.get("/api/health/firebase")

        assert response.json()["status"] == "healthy"
        assert db.users.reads == ["_health"]

    def test_stripe_health_reports_presence_only(self, client):
        response = client.get("/api/health/stripe")

        body = response.json()
        assert body["status"] == "healthy"
        assert body["configured"]["webhookSecret"] is True
        assert "sk_test_fake" not in response.text
        assert "whsec" not in response.text

    def test_stripe_health_degraded_without_webhook_secret(self, client, services):
        services.settings = replace(services.settings, stripe_webhook_secret=None)

        assert client.get("/api/health/stripe").json()["status"] == "degraded"
