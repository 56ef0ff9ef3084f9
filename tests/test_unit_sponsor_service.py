"""Unit tests for the sponsor workflow service, called without HTTP."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError

from marketplace.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InternalError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from marketplace.models.sponsor import FamilyLink, SponsorCooldown, SponsorRequest
from marketplace.services import sponsor_service


def _utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class TestRequestApproval:
    async def test_creates_pending_request(self, db_session, sponsor, family_member):
        request = await sponsor_service.request_approval(
            db_session, family_member["user"], family_member["email"], sponsor["username"],
        )
        assert request.status == "pending"
        assert request.sponsor_id == sponsor["user"].id
        assert request.sponsor_username == sponsor["username"]
        assert request.expires_at - request.created_at == timedelta(days=7)

    async def test_blank_fields_rejected(self, db_session, family_member):
        with pytest.raises(ValidationError):
            await sponsor_service.request_approval(
                db_session, family_member["user"], "   ", "someone",
            )

    async def test_unverified_sponsor(self, db_session, family_member, make_user):
        unverified = await make_user("unverified")
        with pytest.raises(ForbiddenError, match="DoD verified"):
            await sponsor_service.request_approval(
                db_session, family_member["user"], family_member["email"], unverified["username"],
            )

    async def test_active_cooldown_carries_expiry(self, db_session, sponsor, family_member):
        until = datetime.now(timezone.utc) + timedelta(days=3)
        db_session.add(SponsorCooldown(
            sponsor_id=sponsor["user"].id, cooldown_until=until, reason="Link revoked",
        ))
        await db_session.flush()

        with pytest.raises(RateLimitedError) as exc_info:
            await sponsor_service.request_approval(
                db_session, family_member["user"], family_member["email"], sponsor["username"],
            )
        assert exc_info.value.extra["cooldownUntil"] == until

    async def test_expired_cooldown_does_not_block(self, db_session, sponsor, family_member):
        db_session.add(SponsorCooldown(
            sponsor_id=sponsor["user"].id,
            cooldown_until=datetime.now(timezone.utc) - timedelta(minutes=1),
            reason="Link revoked",
        ))
        await db_session.flush()

        request = await sponsor_service.request_approval(
            db_session, family_member["user"], family_member["email"], sponsor["username"],
        )
        assert request.status == "pending"


class TestApproveDenyRevoke:
    async def _pending(self, db_session, sponsor, member) -> SponsorRequest:
        return await sponsor_service.request_approval(
            db_session, member["user"], member["email"], sponsor["username"],
        )

    async def test_approve_effects(self, db_session, sponsor, family_member):
        request = await self._pending(db_session, sponsor, family_member)

        link = await sponsor_service.approve_request(db_session, sponsor["user"], request.id)

        assert link.status == "active"
        assert link.sponsor_id == sponsor["user"].id
        assert link.family_member_id == family_member["user"].id
        assert request.status == "approved"
        assert request.approved_at is not None
        assert family_member["user"].family_verified_at is not None

    async def test_approve_missing_id(self, db_session, sponsor):
        with pytest.raises(ValidationError, match="Request ID required"):
            await sponsor_service.approve_request(db_session, sponsor["user"], None)

    async def test_approve_unknown_id(self, db_session, sponsor):
        with pytest.raises(NotFoundError):
            await sponsor_service.approve_request(db_session, sponsor["user"], uuid.uuid4())

    async def test_expired_request_can_still_be_approved(self, db_session, sponsor, family_member):
        request = await self._pending(db_session, sponsor, family_member)
        request.expires_at = datetime.now(timezone.utc) - timedelta(days=1)
        await db_session.flush()

        link = await sponsor_service.approve_request(db_session, sponsor["user"], request.id)
        assert link.status == "active"

    async def test_deny_keeps_verification_state(self, db_session, sponsor, family_member):
        request = await self._pending(db_session, sponsor, family_member)

        await sponsor_service.deny_request(db_session, sponsor["user"], request.id, "   ")

        assert request.status == "denied"
        assert request.denial_reason is None
        assert family_member["user"].family_verified_at is None

    async def test_deny_by_stranger_forbidden(self, db_session, sponsor, family_member, make_user):
        request = await self._pending(db_session, sponsor, family_member)
        stranger = await make_user("stranger")
        with pytest.raises(ForbiddenError):
            await sponsor_service.deny_request(db_session, stranger["user"], request.id)
        assert request.status == "pending"

    async def test_revoke_effects(self, db_session, sponsor, family_member):
        request = await self._pending(db_session, sponsor, family_member)
        link = await sponsor_service.approve_request(db_session, sponsor["user"], request.id)

        before = datetime.now(timezone.utc)
        cooldown_until = await sponsor_service.revoke_link(db_session, sponsor["user"], link.id)

        assert link.status == "revoked"
        assert link.revoked_at is not None
        assert family_member["user"].family_verified_at is None
        assert before + timedelta(days=7) <= cooldown_until
        assert cooldown_until - before < timedelta(days=7, seconds=30)

    async def test_revoke_overwrites_previous_cooldown(self, db_session, sponsor, family_member):
        db_session.add(SponsorCooldown(
            sponsor_id=sponsor["user"].id,
            cooldown_until=datetime.now(timezone.utc) - timedelta(days=30),
            reason="old",
        ))
        await db_session.flush()

        request = await self._pending(db_session, sponsor, family_member)
        link = await sponsor_service.approve_request(db_session, sponsor["user"], request.id)
        cooldown_until = await sponsor_service.revoke_link(
            db_session, sponsor["user"], link.id, "moved away",
        )

        rows = (await db_session.execute(
            select(SponsorCooldown.cooldown_until, SponsorCooldown.reason)
            .where(SponsorCooldown.sponsor_id == sponsor["user"].id)
        )).all()
        assert len(rows) == 1
        assert _utc(rows[0].cooldown_until) == cooldown_until
        assert rows[0].reason == "moved away"

    async def test_revoke_blank_reason_stored_as_null(self, db_session, sponsor, family_member):
        request = await self._pending(db_session, sponsor, family_member)
        link = await sponsor_service.approve_request(db_session, sponsor["user"], request.id)

        await sponsor_service.revoke_link(db_session, sponsor["user"], link.id, "  \t ")

        assert link.revocation_reason is None
        reason = (await db_session.execute(
            select(SponsorCooldown.reason)
            .where(SponsorCooldown.sponsor_id == sponsor["user"].id)
        )).scalar_one()
        assert reason == "Link revoked"

    async def test_revoke_unknown_link(self, db_session, sponsor):
        with pytest.raises(NotFoundError, match="Link not found or not active"):
            await sponsor_service.revoke_link(db_session, sponsor["user"], uuid.uuid4())


class TestInvariantIndexes:
    """Partial unique indexes reject duplicates that bypass the service checks."""

    async def test_second_pending_request_rejected(self, db_session, sponsor, family_member, make_user):
        other_sponsor = await make_user("sponsor2", dow_verified=True)
        now = datetime.now(timezone.utc)
        for target in (sponsor, other_sponsor):
            db_session.add(SponsorRequest(
                family_member_id=family_member["user"].id,
                sponsor_id=target["user"].id,
                sponsor_username=target["username"],
                status="pending",
                created_at=now,
                expires_at=now + timedelta(days=7),
            ))
        with pytest.raises(IntegrityError):
            await db_session.flush()
        await db_session.rollback()

    async def test_second_active_link_rejected(self, db_session, sponsor, make_user):
        first = await make_user("family1")
        second = await make_user("family2")
        for member in (first, second):
            db_session.add(FamilyLink(
                sponsor_id=sponsor["user"].id,
                family_member_id=member["user"].id,
                status="active",
            ))
        with pytest.raises(IntegrityError):
            await db_session.flush()
        await db_session.rollback()

    async def test_revoked_links_do_not_count(self, db_session, sponsor, make_user):
        first = await make_user("family1")
        second = await make_user("family2")
        db_session.add(FamilyLink(
            sponsor_id=sponsor["user"].id, family_member_id=first["user"].id, status="revoked",
        ))
        db_session.add(FamilyLink(
            sponsor_id=sponsor["user"].id, family_member_id=second["user"].id, status="active",
        ))
        await db_session.flush()

    async def test_concurrent_approval_becomes_conflict(
        self, db_session, sponsor, make_user, monkeypatch,
    ):
        """An active link written after the check surfaces as 409, not a duplicate."""
        first = await make_user("family1")
        second = await make_user("family2")
        request = await sponsor_service.request_approval(
            db_session, first["user"], first["email"], sponsor["username"],
        )

        original = sponsor_service._sponsor_has_active_link

        async def _racing_check(db, sponsor_id):
            # Another worker commits its approval between check and insert
            result = await original(db, sponsor_id)
            db.add(FamilyLink(
                sponsor_id=sponsor["user"].id,
                family_member_id=second["user"].id,
                status="active",
            ))
            await db.flush()
            return result

        monkeypatch.setattr(sponsor_service, "_sponsor_has_active_link", _racing_check)

        with pytest.raises(ConflictError):
            await sponsor_service.approve_request(db_session, sponsor["user"], request.id)

    async def test_concurrent_request_becomes_conflict(
        self, db_session, sponsor, family_member, make_user, monkeypatch,
    ):
        """A pending request written after the check surfaces as 409, not a duplicate."""
        other_sponsor = await make_user("sponsor2", dow_verified=True)

        original = sponsor_service._active_cooldown_until

        async def _racing_check(db, sponsor_id, now):
            # Another worker commits a request for the same member meanwhile
            result = await original(db, sponsor_id, now)
            db.add(SponsorRequest(
                family_member_id=family_member["user"].id,
                sponsor_id=other_sponsor["user"].id,
                sponsor_username=other_sponsor["username"],
                status="pending",
                created_at=now,
                expires_at=now + timedelta(days=7),
            ))
            await db.flush()
            return result

        monkeypatch.setattr(sponsor_service, "_active_cooldown_until", _racing_check)

        with pytest.raises(ConflictError, match="You already have a pending approval request"):
            await sponsor_service.request_approval(
                db_session, family_member["user"], family_member["email"], sponsor["username"],
            )


class TestDashboard:
    async def test_missing_sponsor_id(self, db_session, admin):
        with pytest.raises(ValidationError):
            await sponsor_service.get_sponsor_dashboard(db_session, admin["user"], None)

    async def test_store_failure_degrades_to_empty(self, db_session, sponsor, family_member, monkeypatch):
        await sponsor_service.request_approval(
            db_session, family_member["user"], family_member["email"], sponsor["username"],
        )

        async def _broken_execute(*args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("no such table"))

        monkeypatch.setattr(db_session, "execute", _broken_execute)

        dashboard = await sponsor_service.get_sponsor_dashboard(
            db_session, sponsor["user"], sponsor["user"].id,
        )
        assert dashboard.requests == []
        assert dashboard.active_family is None
        assert dashboard.cooldown is None
        assert dashboard.warnings == ["requests", "activeFamily", "cooldown"]

    async def test_failed_section_leaves_others_loaded(
        self, db_session, sponsor, family_member, monkeypatch,
    ):
        request = await sponsor_service.request_approval(
            db_session, family_member["user"], family_member["email"], sponsor["username"],
        )
        await sponsor_service.approve_request(db_session, sponsor["user"], request.id)
        db_session.add(SponsorCooldown(
            sponsor_id=sponsor["user"].id,
            cooldown_until=datetime.now(timezone.utc) + timedelta(days=2),
            reason="Link revoked",
        ))
        await db_session.flush()

        real_execute = db_session.execute
        calls = []

        async def _requests_query_fails(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise OperationalError("SELECT", {}, Exception("no such table"))
            return await real_execute(*args, **kwargs)

        monkeypatch.setattr(db_session, "execute", _requests_query_fails)

        dashboard = await sponsor_service.get_sponsor_dashboard(
            db_session, sponsor["user"], sponsor["user"].id,
        )

        assert dashboard.warnings == ["requests"]
        assert dashboard.requests == []
        assert dashboard.active_family is not None
        assert dashboard.active_family.family_member_id == family_member["user"].id
        assert dashboard.cooldown is not None
        assert dashboard.cooldown.reason == "Link revoked"

        # The failed section only rolled back its own savepoint
        assert not db_session.in_nested_transaction()
        remaining = await real_execute(
            select(SponsorRequest.status).where(SponsorRequest.id == request.id)
        )
        assert remaining.scalar_one() == "approved"


class TestStoreErrors:
    async def test_store_failure_becomes_internal_error(self, db_session, sponsor, monkeypatch):
        async def _broken_execute(*args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("connection lost"))

        monkeypatch.setattr(db_session, "execute", _broken_execute)

        with pytest.raises(InternalError, match="Failed to approve request"):
            await sponsor_service.approve_request(db_session, sponsor["user"], uuid.uuid4())


class TestPurgeExpiredCooldowns:
    async def test_only_long_expired_rows_removed(self, db_session, sponsor, make_user):
        other = await make_user("sponsor2", dow_verified=True)
        now = datetime.now(timezone.utc)
        db_session.add(SponsorCooldown(
            sponsor_id=sponsor["user"].id, cooldown_until=now - timedelta(days=60),
        ))
        db_session.add(SponsorCooldown(
            sponsor_id=other["user"].id, cooldown_until=now - timedelta(days=2),
        ))
        await db_session.flush()

        removed = await sponsor_service.purge_expired_cooldowns(db_session, timedelta(days=30))

        assert removed == 1
        remaining = (await db_session.execute(select(SponsorCooldown.sponsor_id))).scalars().all()
        assert remaining == [other["user"].id]
