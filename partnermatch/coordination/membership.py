"""Team lifecycle and membership coordination.

Every mutation that checks a membership invariant and then writes runs
under a named lock from the injected ``LockService``, so the check and
the write are serialized across all instances sharing the store:

- join: the per-user lock, then the team lock
- quit, delete, update: the team lock only
- create: the per-user lock when ``TeamLimits.strict_owner_cap`` is set

Lock order is always user before team, and no operation takes a user
lock while holding a team lock, so acquisitions cannot form a cycle.

Multi-step writes share one SQLite transaction. Any failure inside it
rolls the whole step back and is reported as SYSTEM_ERROR.

Read paths (listing, decoration counts) take no locks and return a
snapshot that may already be stale.
"""

import hmac
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional

import structlog

from partnermatch.config import LockConfig, TeamLimits
from partnermatch.core.clock import Clock, SystemClock
from partnermatch.core.errors import (
    ConflictReason,
    ConsistencyError,
    MatchError,
    OperationResult,
    conflict,
    invalid_argument,
    lock_timeout,
    not_found,
    system_error,
    unauthorized,
)
from partnermatch.persistence.query import Query, any_of, eq, gt, in_, is_null, like
from partnermatch.persistence.teams import Membership, Team, TeamStatus, to_timestamp

if TYPE_CHECKING:
    from partnermatch.coordination.locks import LockHandle, LockService
    from partnermatch.persistence.teams import TeamStore
    from partnermatch.persistence.users import UserStore

log = structlog.get_logger()


@dataclass
class TeamCreate:
    """Requested shape of a new team."""

    name: str
    max_num: int
    description: str = ""
    status: int = TeamStatus.PUBLIC
    password: Optional[str] = None
    expire_time: Optional[datetime] = None


@dataclass
class TeamUpdate:
    """Changes to an existing team; None leaves a field as is."""

    team_id: int
    name: Optional[str] = None
    description: Optional[str] = None
    expire_time: Optional[datetime] = None
    status: Optional[int] = None
    password: Optional[str] = None


@dataclass
class TeamQuery:
    """Conjunctive team filter.

    Attributes:
        id: Exact team id
        id_list: Team id must be in this set
        search_text: Substring of name or description
        name: Substring of name
        description: Substring of description
        max_num: Exact capacity
        owner_id: Exact owner
        status: Visibility; unknown or omitted means PUBLIC
    """

    id: Optional[int] = None
    id_list: Optional[list[int]] = None
    search_text: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    max_num: Optional[int] = None
    owner_id: Optional[int] = None
    status: Optional[int] = None


@dataclass
class TeamView:
    """A listed team with display-only decorations."""

    team: Team
    has_join_num: int = 0
    has_join: bool = False
    owner: Optional[dict] = None

    def to_dict(self) -> dict:
        data = self.team.to_dict()
        data["has_join_num"] = self.has_join_num
        data["has_join"] = self.has_join
        data["owner"] = self.owner
        return data


class QuitOutcome(Enum):
    """What happened to the team when a member left."""

    LEFT = "left"
    OWNERSHIP_TRANSFERRED = "ownership_transferred"
    DISSOLVED = "dissolved"


class MembershipCoordinator:
    """Creates, joins, leaves, updates and deletes teams."""

    def __init__(
        self,
        team_store: "TeamStore",
        user_store: "UserStore",
        locks: "LockService",
        clock: Optional[Clock] = None,
        limits: Optional[TeamLimits] = None,
        lock_config: Optional[LockConfig] = None,
    ):
        """Initialize the coordinator.

        Args:
            team_store: Team and membership storage
            user_store: Authoritative user records
            locks: Lock service shared by every instance
            clock: Time source for expiry checks
            limits: Team and membership limits
            lock_config: Lock naming, scope and wait settings
        """
        self.teams = team_store
        self.users = user_store
        self.locks = locks
        self.clock = clock or SystemClock()
        self.limits = limits or TeamLimits()
        self.lock_config = lock_config or LockConfig()

    # ========== Lock helpers ==========

    def user_lock_name(self, user_id: int) -> str:
        return f"{self.lock_config.key_prefix}:user:{user_id}"

    def team_lock_name(self, team_id: int) -> str:
        """Lock serializing membership changes of one team.

        With ``join_lock_scope = "global"`` every team shares one name.
        """
        if self.lock_config.join_lock_scope == "global":
            return f"{self.lock_config.key_prefix}:join_team"
        return f"{self.lock_config.key_prefix}:team:{team_id}"

    async def _acquire(self, name: str) -> Optional["LockHandle"]:
        handle = await self.locks.acquire(
            name,
            wait=self.lock_config.wait_seconds,
            lease=self.lock_config.lease_seconds,
        )
        if handle is None:
            log.warning("lock_timeout", name=name, wait=self.lock_config.wait_seconds)
        return handle

    async def _release(self, handle: "LockHandle") -> None:
        try:
            await self.locks.release(handle)
        except Exception as e:
            # The lease still expires on its own
            log.error("lock_release_failed", name=handle.name, error=str(e))

    # ========== Validation ==========

    def _validate_name(self, name: Optional[str]) -> Optional[MatchError]:
        if name is None or not name.strip():
            return invalid_argument("Team name is required")
        if len(name) > self.limits.max_name_length:
            return invalid_argument(
                f"Team name exceeds {self.limits.max_name_length} characters"
            )
        return None

    def _validate_description(self, description: Optional[str]) -> Optional[MatchError]:
        if description and len(description) > self.limits.max_description_length:
            return invalid_argument(
                f"Description exceeds {self.limits.max_description_length} characters"
            )
        return None

    def _validate_secret(
        self, status: TeamStatus, password: Optional[str]
    ) -> Optional[MatchError]:
        if status != TeamStatus.SECRET:
            return None
        if password is None or not password.strip():
            return invalid_argument("A secret team requires a password")
        if len(password) > self.limits.max_password_length:
            return invalid_argument(
                f"Password exceeds {self.limits.max_password_length} characters"
            )
        return None

    def _validate_expiry(self, expire_time: Optional[datetime]) -> Optional[MatchError]:
        if expire_time is not None and expire_time <= self.clock.now():
            return invalid_argument("Expiry must be in the future")
        return None

    def _validate_create(self, spec: TeamCreate) -> Optional[MatchError]:
        if not self.limits.min_capacity <= spec.max_num <= self.limits.max_capacity:
            return invalid_argument(
                f"Capacity must be between {self.limits.min_capacity} "
                f"and {self.limits.max_capacity}"
            )
        if TeamStatus.from_value(spec.status) is None:
            return invalid_argument(f"Unknown team status {spec.status}")
        return (
            self._validate_name(spec.name)
            or self._validate_description(spec.description)
            or self._validate_secret(TeamStatus(spec.status), spec.password)
            or self._validate_expiry(spec.expire_time)
        )

    # ========== Create ==========

    async def create_team(self, spec: TeamCreate, owner_id: int) -> OperationResult[int]:
        """Create a team owned by ``owner_id`` and add the owner as its first member.

        Args:
            spec: Team fields
            owner_id: Creating user

        Returns:
            Result carrying the new team id
        """
        spec = replace(spec, expire_time=_as_local_time(spec.expire_time))
        error = self._validate_create(spec)
        if error:
            return OperationResult.fail(error)

        try:
            owner = await self.users.get_user(owner_id)
            if owner is None:
                return OperationResult.fail(not_found(f"User {owner_id} not found"))

            if not self.limits.strict_owner_cap:
                return await self._create_team(spec, owner_id)

            handle = await self._acquire(self.user_lock_name(owner_id))
            if handle is None:
                return OperationResult.fail(lock_timeout(self.user_lock_name(owner_id)))
            try:
                return await self._create_team(spec, owner_id)
            finally:
                await self._release(handle)
        except Exception as e:
            return OperationResult.fail(
                system_error(e, "create_team", owner_id=owner_id, name=spec.name)
            )

    async def _create_team(self, spec: TeamCreate, owner_id: int) -> OperationResult[int]:
        owned = await self.teams.count_teams(Query().where(eq("owner_id", owner_id)))
        if owned >= self.limits.max_owned_teams:
            return OperationResult.fail(
                conflict(
                    ConflictReason.TOO_MANY_OWNED_TEAMS,
                    f"User {owner_id} already owns {owned} teams",
                )
            )

        memberships = await self.teams.count_memberships(
            Query().where(eq("user_id", owner_id))
        )
        if memberships >= self.limits.max_memberships:
            return OperationResult.fail(
                conflict(
                    ConflictReason.TOO_MANY_MEMBERSHIPS,
                    f"User {owner_id} already holds {memberships} memberships",
                )
            )

        now = self.clock.now()
        status = TeamStatus(spec.status)
        team = Team(
            id=0,
            name=spec.name,
            description=spec.description or "",
            max_num=spec.max_num,
            owner_id=owner_id,
            status=status,
            password=spec.password if status == TeamStatus.SECRET else None,
            expire_time=spec.expire_time,
            created_at=now,
            updated_at=now,
        )

        async with self.teams.db.transaction() as conn:
            await self.teams.insert_team(team, conn)
            await self.teams.insert_membership(owner_id, team.id, now, conn)

        log.info(
            "team_created",
            team_id=team.id,
            owner_id=owner_id,
            status=status.name,
            max_num=team.max_num,
        )
        return OperationResult.ok(team.id)

    # ========== Join ==========

    async def join_team(
        self,
        team_id: int,
        user_id: int,
        password: Optional[str] = None,
    ) -> OperationResult[Membership]:
        """Add ``user_id`` to a team.

        Every precondition is evaluated while holding the user lock and
        the team lock, so concurrent joins cannot overbook a team or push
        a user past the membership cap.

        Args:
            team_id: Team to join
            user_id: Joining user
            password: Team password for SECRET teams

        Returns:
            Result carrying the new Membership
        """
        try:
            user = await self.users.get_user(user_id)
            if user is None:
                return OperationResult.fail(not_found(f"User {user_id} not found"))

            user_lock = await self._acquire(self.user_lock_name(user_id))
            if user_lock is None:
                return OperationResult.fail(lock_timeout(self.user_lock_name(user_id)))
            try:
                team_lock = await self._acquire(self.team_lock_name(team_id))
                if team_lock is None:
                    return OperationResult.fail(lock_timeout(self.team_lock_name(team_id)))
                try:
                    return await self._join_locked(team_id, user_id, password)
                finally:
                    await self._release(team_lock)
            finally:
                await self._release(user_lock)
        except Exception as e:
            return OperationResult.fail(
                system_error(e, "join_team", team_id=team_id, user_id=user_id)
            )

    async def _join_locked(
        self,
        team_id: int,
        user_id: int,
        password: Optional[str],
    ) -> OperationResult[Membership]:
        team = await self.teams.get_team(team_id)
        if team is None:
            return OperationResult.fail(not_found(f"Team {team_id} not found"))

        rejection = await self._join_rejection(team, user_id, password)
        if rejection:
            log.info(
                "team_join_rejected",
                team_id=team_id,
                user_id=user_id,
                reason=rejection.reason.value if rejection.reason else None,
            )
            return OperationResult.fail(rejection)

        try:
            membership = await self.teams.insert_membership(
                user_id, team_id, self.clock.now()
            )
        except ValueError:
            return OperationResult.fail(
                conflict(ConflictReason.ALREADY_MEMBER, f"User {user_id} already in team")
            )

        log.info("team_joined", team_id=team_id, user_id=user_id)
        return OperationResult.ok(membership)

    async def _join_rejection(
        self,
        team: Team,
        user_id: int,
        password: Optional[str],
    ) -> Optional[MatchError]:
        if team.is_expired(self.clock.now()):
            return conflict(ConflictReason.TEAM_EXPIRED, f"Team {team.id} has expired")
        if team.status == TeamStatus.PRIVATE:
            return conflict(ConflictReason.PRIVATE_TEAM, f"Team {team.id} is private")
        if team.status == TeamStatus.SECRET and not _password_matches(team.password, password):
            return conflict(ConflictReason.WRONG_SECRET, "Wrong team password")

        if await self.teams.get_membership(team.id, user_id) is not None:
            return conflict(
                ConflictReason.ALREADY_MEMBER, f"User {user_id} already in team {team.id}"
            )

        held = await self.teams.count_memberships(Query().where(eq("user_id", user_id)))
        if held >= self.limits.max_memberships:
            return conflict(
                ConflictReason.TOO_MANY_MEMBERSHIPS,
                f"User {user_id} already holds {held} memberships",
            )

        members = await self.teams.count_team_members(team.id)
        if members >= team.max_num:
            return conflict(ConflictReason.TEAM_FULL, f"Team {team.id} is full")

        return None

    # ========== Quit ==========

    async def quit_team(self, team_id: int, user_id: int) -> OperationResult[QuitOutcome]:
        """Remove ``user_id`` from a team.

        The last member leaving dissolves the team. An owner leaving hands
        ownership to the earliest-joined remaining member.

        Returns:
            Result carrying what happened to the team
        """
        try:
            handle = await self._acquire(self.team_lock_name(team_id))
            if handle is None:
                return OperationResult.fail(lock_timeout(self.team_lock_name(team_id)))
            try:
                return await self._quit_locked(team_id, user_id)
            finally:
                await self._release(handle)
        except Exception as e:
            return OperationResult.fail(
                system_error(e, "quit_team", team_id=team_id, user_id=user_id)
            )

    async def _quit_locked(self, team_id: int, user_id: int) -> OperationResult[QuitOutcome]:
        team = await self.teams.get_team(team_id)
        if team is None:
            return OperationResult.fail(not_found(f"Team {team_id} not found"))

        if await self.teams.get_membership(team_id, user_id) is None:
            return OperationResult.fail(
                conflict(ConflictReason.NOT_MEMBER, f"User {user_id} is not in team {team_id}")
            )

        members = await self.teams.count_team_members(team_id)
        if members == 1:
            await self._dissolve(team_id)
            log.info("team_dissolved", team_id=team_id, user_id=user_id)
            return OperationResult.ok(QuitOutcome.DISSOLVED)

        if team.owner_id == user_id:
            successor = await self._successor(team_id, user_id)
            async with self.teams.db.transaction() as conn:
                if await self.teams.update_owner(team_id, successor, conn) == 0:
                    raise ConsistencyError(f"Ownership transfer of team {team_id} touched no row")
                await self._remove_member(team_id, user_id, conn)
            log.info(
                "team_ownership_transferred",
                team_id=team_id,
                from_user=user_id,
                to_user=successor,
            )
            return OperationResult.ok(QuitOutcome.OWNERSHIP_TRANSFERRED)

        await self._remove_member(team_id, user_id)
        log.info("team_quit", team_id=team_id, user_id=user_id)
        return OperationResult.ok(QuitOutcome.LEFT)

    async def _successor(self, team_id: int, owner_id: int) -> int:
        """Earliest-joined member other than the owner."""
        earliest = await self.teams.list_memberships(
            Query().where(eq("team_id", team_id)).order_by("join_time", "id").limit(2)
        )
        for membership in earliest:
            if membership.user_id != owner_id:
                return membership.user_id
        raise ConsistencyError(f"Team {team_id} has no member to take ownership")

    async def _remove_member(self, team_id: int, user_id: int, conn=None) -> None:
        removed = await self.teams.remove_memberships(
            Query().where(eq("team_id", team_id)).where(eq("user_id", user_id)), conn
        )
        if removed == 0:
            raise ConsistencyError(f"Membership of user {user_id} in team {team_id} vanished")

    async def _dissolve(self, team_id: int) -> None:
        """Remove every membership and then the team, atomically."""
        async with self.teams.db.transaction() as conn:
            removed = await self.teams.remove_memberships(
                Query().where(eq("team_id", team_id)), conn
            )
            if removed == 0:
                raise ConsistencyError(f"Team {team_id} had no memberships to remove")
            if await self.teams.remove_team(team_id, conn) == 0:
                raise ConsistencyError(f"Team {team_id} vanished during removal")

    # ========== Delete ==========

    async def delete_team(self, team_id: int, requester_id: int) -> OperationResult[int]:
        """Delete a team and all its memberships. Only the owner may delete.

        Returns:
            Result carrying the deleted team id
        """
        try:
            handle = await self._acquire(self.team_lock_name(team_id))
            if handle is None:
                return OperationResult.fail(lock_timeout(self.team_lock_name(team_id)))
            try:
                team = await self.teams.get_team(team_id)
                if team is None:
                    return OperationResult.fail(not_found(f"Team {team_id} not found"))
                if team.owner_id != requester_id:
                    return OperationResult.fail(
                        unauthorized("Only the team owner may delete a team")
                    )

                await self._dissolve(team_id)
            finally:
                await self._release(handle)
        except Exception as e:
            return OperationResult.fail(
                system_error(e, "delete_team", team_id=team_id, requester_id=requester_id)
            )

        log.info("team_deleted", team_id=team_id, requester_id=requester_id)
        return OperationResult.ok(team_id)

    # ========== Update ==========

    async def update_team(self, update: TeamUpdate, requester_id: int) -> OperationResult[Team]:
        """Change team fields. The owner or an admin may update.

        Switching a team to SECRET requires a password; leaving SECRET
        clears the stored one.

        Returns:
            Result carrying the updated Team
        """
        try:
            requester = await self.users.get_user(requester_id)
            if requester is None:
                return OperationResult.fail(not_found(f"User {requester_id} not found"))

            handle = await self._acquire(self.team_lock_name(update.team_id))
            if handle is None:
                return OperationResult.fail(lock_timeout(self.team_lock_name(update.team_id)))
            try:
                team = await self.teams.get_team(update.team_id)
                if team is None:
                    return OperationResult.fail(not_found(f"Team {update.team_id} not found"))
                if team.owner_id != requester_id and not requester.is_admin:
                    return OperationResult.fail(
                        unauthorized("Only the team owner or an admin may update a team")
                    )

                changes = self._update_changes(team, update)
                if isinstance(changes, MatchError):
                    return OperationResult.fail(changes)

                await self.teams.update_team(team.id, changes)
                updated = await self.teams.get_team(team.id)
            finally:
                await self._release(handle)
        except Exception as e:
            return OperationResult.fail(
                system_error(e, "update_team", team_id=update.team_id, requester_id=requester_id)
            )

        log.info(
            "team_updated",
            team_id=update.team_id,
            requester_id=requester_id,
            fields=sorted(changes),
        )
        return OperationResult.ok(updated)

    def _update_changes(self, team: Team, update: TeamUpdate):
        """Validated column changes, or the MatchError explaining why not."""
        changes: dict = {}

        if update.name is not None:
            error = self._validate_name(update.name)
            if error:
                return error
            changes["name"] = update.name

        if update.description is not None:
            error = self._validate_description(update.description)
            if error:
                return error
            changes["description"] = update.description

        if update.expire_time is not None:
            expire_time = _as_local_time(update.expire_time)
            error = self._validate_expiry(expire_time)
            if error:
                return error
            changes["expire_time"] = expire_time

        status = team.status
        if update.status is not None:
            status = TeamStatus.from_value(update.status)
            if status is None:
                return invalid_argument(f"Unknown team status {update.status}")
            changes["status"] = status

        if status == TeamStatus.SECRET:
            if update.password is not None:
                password = update.password
            elif team.status == TeamStatus.SECRET:
                password = team.password
            else:
                # Switching to SECRET must come with its password
                password = None
            error = self._validate_secret(status, password)
            if error:
                return error
            if password != team.password:
                changes["password"] = password
        elif team.password is not None:
            changes["password"] = None

        if not changes:
            return invalid_argument("Nothing to update")
        return changes

    # ========== Reads ==========

    async def get_team(self, team_id: int) -> OperationResult[Team]:
        try:
            team = await self.teams.get_team(team_id)
        except Exception as e:
            return OperationResult.fail(system_error(e, "get_team", team_id=team_id))
        if team is None:
            return OperationResult.fail(not_found(f"Team {team_id} not found"))
        return OperationResult.ok(team)

    async def list_teams(
        self,
        query: Optional[TeamQuery] = None,
        viewer_id: Optional[int] = None,
        viewer_is_admin: bool = False,
    ) -> OperationResult[list[TeamView]]:
        """List discoverable teams matching every given filter.

        Expired teams are never listed. Status defaults to PUBLIC;
        asking for PRIVATE teams requires an admin viewer.

        Args:
            query: Filters
            viewer_id: User whose "has joined" flag is computed
            viewer_is_admin: Whether the viewer may see PRIVATE teams

        Returns:
            Result carrying decorated teams ordered by id
        """
        query = query or TeamQuery()
        status = TeamStatus.from_value(query.status) or TeamStatus.PUBLIC
        if status == TeamStatus.PRIVATE and not viewer_is_admin:
            return OperationResult.fail(unauthorized("Only admins may list private teams"))

        return await self._list(query, viewer_id, status)

    async def list_my_created_teams(
        self,
        user_id: int,
        query: Optional[TeamQuery] = None,
    ) -> OperationResult[list[TeamView]]:
        """Teams owned by ``user_id``, of every status unless one is given."""
        query = replace(query or TeamQuery(), owner_id=user_id)
        return await self._list(query, user_id, TeamStatus.from_value(query.status))

    async def list_my_joined_teams(
        self,
        user_id: int,
        query: Optional[TeamQuery] = None,
    ) -> OperationResult[list[TeamView]]:
        """Teams ``user_id`` is a member of (owned ones included)."""
        try:
            memberships = await self.teams.list_memberships(
                Query().where(eq("user_id", user_id))
            )
        except Exception as e:
            return OperationResult.fail(
                system_error(e, "list_my_joined_teams", user_id=user_id)
            )

        query = replace(query or TeamQuery(), id_list=[m.team_id for m in memberships])
        return await self._list(query, user_id, TeamStatus.from_value(query.status))

    async def _list(
        self,
        query: TeamQuery,
        viewer_id: Optional[int],
        status: Optional[TeamStatus],
    ) -> OperationResult[list[TeamView]]:
        try:
            teams = await self.teams.list_teams(self._build_query(query, status))
            views = await self._decorate(teams, viewer_id)
        except Exception as e:
            return OperationResult.fail(system_error(e, "list_teams", viewer_id=viewer_id))

        log.debug("teams_listed", count=len(views), viewer_id=viewer_id)
        return OperationResult.ok(views)

    def _build_query(self, query: TeamQuery, status: Optional[TeamStatus]) -> Query:
        q = Query()
        if query.id is not None and query.id > 0:
            q.where(eq("id", query.id))
        if query.id_list is not None:
            q.where(in_("id", query.id_list))
        if query.search_text and query.search_text.strip():
            q.where(any_of(like("name", query.search_text), like("description", query.search_text)))
        if query.name and query.name.strip():
            q.where(like("name", query.name))
        if query.description and query.description.strip():
            q.where(like("description", query.description))
        if query.max_num is not None and query.max_num > 0:
            q.where(eq("max_num", query.max_num))
        if query.owner_id is not None and query.owner_id > 0:
            q.where(eq("owner_id", query.owner_id))
        if status is not None:
            q.where(eq("status", int(status)))

        q.where(any_of(gt("expire_time", to_timestamp(self.clock.now())), is_null("expire_time")))
        return q.order_by("id")

    async def _decorate(self, teams: list[Team], viewer_id: Optional[int]) -> list[TeamView]:
        """Attach member counts, the viewer's joined flag and owner summaries."""
        if not teams:
            return []

        team_ids = [t.id for t in teams]
        counts = await self.teams.count_members_by_team(team_ids)

        joined: set[int] = set()
        if viewer_id is not None:
            memberships = await self.teams.list_memberships(
                Query().where(eq("user_id", viewer_id)).where(in_("team_id", team_ids))
            )
            joined = {m.team_id for m in memberships}

        owners = {
            u.id: u
            for u in await self.users.get_users_by_ids({t.owner_id for t in teams})
        }

        return [
            TeamView(
                team=t,
                has_join_num=counts.get(t.id, 0),
                has_join=t.id in joined,
                owner=owners[t.owner_id].to_dict() if t.owner_id in owners else None,
            )
            for t in teams
        ]


def _as_local_time(value: Optional[datetime]) -> Optional[datetime]:
    """Aware datetimes become naive local time, the form the clock and store use."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


def _password_matches(expected: Optional[str], supplied: Optional[str]) -> bool:
    if expected is None or supplied is None:
        return False
    return hmac.compare_digest(expected.encode(), supplied.encode())
