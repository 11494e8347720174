"""Tests for recipient directories and entity locks."""

import asyncio
import json

import httpx
import pytest

from app.core.directory import (
    HttpRecipientDirectory,
    Recipient,
    StaticRecipientDirectory,
    build_directory,
)
from app.core.exceptions import RecipientResolutionFailed
from app.core.locks import EntityLocks
from app.schemas.enums import RecipientType


class TestStaticRecipientDirectory:
    """Tests for the in-memory directory."""

    @pytest.mark.asyncio
    async def test_resolves_each_tier(self, directory):
        [owner] = await directory.resolve_recipients(RecipientType.INDIVIDUAL, "owner-1")
        assert owner.contacts["email"]

        [officer] = await directory.resolve_recipients(RecipientType.ROLE, "compliance_officer")
        assert officer.id == "officer-1"

        department = await directory.resolve_recipients(RecipientType.DEPARTMENT, "compliance")
        assert [r.id for r in department] == ["dept-1", "dept-2"]

    @pytest.mark.asyncio
    async def test_unknown_reference_raises(self, directory):
        with pytest.raises(RecipientResolutionFailed):
            await directory.resolve_recipients(RecipientType.ROLE, "no-such-role")
        with pytest.raises(RecipientResolutionFailed):
            await directory.resolve_recipients(RecipientType.INDIVIDUAL, "ghost")

    @pytest.mark.asyncio
    async def test_from_file(self, tmp_path):
        path = tmp_path / "directory.json"
        path.write_text(json.dumps({
            "users": [{"id": "u1", "name": "Una", "contact_info": {"email": "u1@example.com"}}],
            "roles": {"compliance_officer": ["u1"]},
        }))

        directory = StaticRecipientDirectory.from_file(path)

        [recipient] = await directory.resolve_recipients(RecipientType.ROLE, "compliance_officer")
        assert recipient == Recipient("u1", "Una", {"email": "u1@example.com"})
        # No explicit stakeholder list: everyone known
        assert len(await directory.resolve_recipients(RecipientType.ALL_STAKEHOLDERS, "d-1")) == 1

    def test_build_directory_defaults_to_empty(self, settings):
        assert isinstance(build_directory(settings), StaticRecipientDirectory)


class TestHttpRecipientDirectory:
    """Tests for the HTTP-backed directory."""

    @pytest.mark.asyncio
    async def test_resolves_from_crud_layer(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["type"] == "department"
            assert request.url.params["ref"] == "finance"
            return httpx.Response(200, json=[{"id": "u9", "name": "Nine", "contacts": {"sms": "+15550000009"}}])

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            directory = HttpRecipientDirectory("https://crud.test/api/", client=client)
            [recipient] = await directory.resolve_recipients(RecipientType.DEPARTMENT, "finance")

        assert recipient.contacts == {"sms": "+15550000009"}

    @pytest.mark.asyncio
    async def test_lookup_failure_raises(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(404))
        async with httpx.AsyncClient(transport=transport) as client:
            directory = HttpRecipientDirectory("https://crud.test", client=client)
            with pytest.raises(RecipientResolutionFailed):
                await directory.resolve_recipients(RecipientType.ROLE, "auditor")


class TestEntityLocks:
    """Tests for per-entity locking."""

    @pytest.mark.asyncio
    async def test_same_entity_is_serialized(self):
        locks = EntityLocks()
        order = []

        async def work(tag):
            async with locks.notification("n-1"):
                order.append(f"{tag}-start")
                await asyncio.sleep(0.01)
                order.append(f"{tag}-end")

        await asyncio.gather(work("a"), work("b"))

        assert order == ["a-start", "a-end", "b-start", "b-end"]

    @pytest.mark.asyncio
    async def test_different_entities_run_concurrently(self):
        locks = EntityLocks()
        inside = []

        async def work(notification_id):
            async with locks.notification(notification_id):
                inside.append(len(locks))
                await asyncio.sleep(0.01)

        await asyncio.gather(work("n-1"), work("n-2"))

        assert max(inside) == 2

    @pytest.mark.asyncio
    async def test_locks_are_released(self):
        locks = EntityLocks()
        async with locks.deadline("d-1"):
            assert len(locks) == 1
        assert len(locks) == 0
