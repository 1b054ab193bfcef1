class TestHealth:
    async def test_health(self, api):
        body = (await api.get("/health")).json()
        assert body["status"] == "ok"
        assert body["revolut_configured"] is True
        assert body["webhooks_enabled"] is True

    async def test_health_db(self, api, household_id, make_connection):
        await make_connection(household_id)
        response = await api.get("/health/db")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "database": "connected", "active_connections": 1}

    async def test_security_headers(self, api):
        response = await api.get("/health")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
