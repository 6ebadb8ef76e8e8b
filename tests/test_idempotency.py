import pytest

from api.errors import IdempotencyMismatchError
from db.idempotency_db import (
    PENDING, PROCEED, REPLAY, begin_request, finish_request, get_request, release_request,
)

ENDPOINT = "POST /cast"
PAYLOAD = {"spell_key": "echo", "input": {"a": 1, "b": [1, 2]}}


class TestIdempotencyStore:
    """Request claims keyed by (key, endpoint, user)."""

    @pytest.mark.asyncio
    async def test_first_claim_proceeds(self, db):
        claim = await begin_request(db, "k1", ENDPOINT, "u1", PAYLOAD)
        assert claim.state == PROCEED
        row = await get_request(db, "k1", ENDPOINT, "u1")
        assert row.response_status is None

    @pytest.mark.asyncio
    async def test_unfinished_claim_is_pending(self, db):
        await begin_request(db, "k1", ENDPOINT, "u1", PAYLOAD)
        claim = await begin_request(db, "k1", ENDPOINT, "u1", PAYLOAD)
        assert claim.state == PENDING

    @pytest.mark.asyncio
    async def test_finished_claim_replays(self, db):
        await begin_request(db, "k1", ENDPOINT, "u1", PAYLOAD)
        await finish_request(db, "k1", ENDPOINT, "u1", 402, {"ok": False, "code": "BILLING_FAILED"})

        # key order in the payload does not matter
        claim = await begin_request(db, "k1", ENDPOINT, "u1", {"input": {"b": [1, 2], "a": 1}, "spell_key": "echo"})

        assert claim.state == REPLAY
        assert claim.response_status == 402
        assert claim.response_body == {"ok": False, "code": "BILLING_FAILED"}

    @pytest.mark.asyncio
    async def test_different_payload_conflicts(self, db):
        await begin_request(db, "k1", ENDPOINT, "u1", PAYLOAD)
        with pytest.raises(IdempotencyMismatchError):
            await begin_request(db, "k1", ENDPOINT, "u1", {"spell_key": "echo", "input": {"a": 2}})

    @pytest.mark.asyncio
    async def test_scoped_by_user_and_endpoint(self, db):
        await begin_request(db, "k1", ENDPOINT, "u1", PAYLOAD)
        assert (await begin_request(db, "k1", ENDPOINT, "u2", PAYLOAD)).state == PROCEED
        assert (await begin_request(db, "k1", "POST /other", "u1", PAYLOAD)).state == PROCEED

    @pytest.mark.asyncio
    async def test_release_frees_unfinished_key(self, db):
        await begin_request(db, "k1", ENDPOINT, "u1", PAYLOAD)
        await release_request(db, "k1", ENDPOINT, "u1")
        assert (await begin_request(db, "k1", ENDPOINT, "u1", PAYLOAD)).state == PROCEED

    @pytest.mark.asyncio
    async def test_release_keeps_finished_response(self, db):
        await begin_request(db, "k1", ENDPOINT, "u1", PAYLOAD)
        await finish_request(db, "k1", ENDPOINT, "u1", 200, {"ok": True})
        await release_request(db, "k1", ENDPOINT, "u1")
        assert (await begin_request(db, "k1", ENDPOINT, "u1", PAYLOAD)).state == REPLAY
