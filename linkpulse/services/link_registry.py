"""Link registry: short address lookups, link CRUD and the visit counter."""

import secrets
import string
from dataclasses import dataclass
from uuid import UUID

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError

from linkpulse.core.database import Database
from linkpulse.core.exceptions import AddressTakenError
from linkpulse.models.link import Link
from linkpulse.models.user import User
from linkpulse.models.visit import VisitAggregate

logger = structlog.get_logger()

# Characters for random address generation (base62)
ADDRESS_CHARS = string.ascii_lowercase + string.ascii_uppercase + string.digits
ADDRESS_LENGTH = 6

# Paths served by the app itself
RESERVED_ADDRESSES = frozenset({"api", "docs", "health", "metrics", "openapi.json", "redoc", "stats"})


def generate_address(length: int = ADDRESS_LENGTH) -> str:
    """Generate a random address using base62 characters."""
    return "".join(secrets.choice(ADDRESS_CHARS) for _ in range(length))


@dataclass(frozen=True)
class LinkRef:
    """The fields needed to attribute a visit to a link."""

    id: UUID
    user_id: UUID


class LinkRegistry:
    """Reads and writes links, each call in its own session."""

    def __init__(self, database: Database, max_address_attempts: int = 10):
        self._database = database
        self._max_address_attempts = max_address_attempts

    async def find(self, link_id: UUID) -> LinkRef | None:
        """Resolve a link id to its owner; None if the link no longer exists."""
        async with self._database.session() as session:
            result = await session.execute(
                select(Link.id, Link.user_id).where(Link.id == link_id)
            )
            row = result.one_or_none()
        if row is None:
            return None
        return LinkRef(id=row.id, user_id=row.user_id)

    async def find_by_address(self, address: str) -> Link | None:
        async with self._database.session() as session:
            result = await session.execute(select(Link).where(Link.address == address))
            return result.scalar_one_or_none()

    async def get(self, link_id: UUID, user_id: UUID | None = None) -> Link | None:
        """Get a link by its ID, optionally filtering by owner."""
        query = select(Link).where(Link.id == link_id)
        if user_id:
            query = query.where(Link.user_id == user_id)
        async with self._database.session() as session:
            result = await session.execute(query)
            return result.scalar_one_or_none()

    async def get_user(self, user_id: UUID) -> User | None:
        async with self._database.session() as session:
            result = await session.execute(select(User).where(User.id == user_id))
            return result.scalar_one_or_none()

    async def list_for_user(
        self,
        user_id: UUID,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[Link], int]:
        """Get paginated links for a user.

        Returns tuple of (links, total_count).
        """
        query = select(Link).where(Link.user_id == user_id)
        count_query = select(func.count(Link.id)).where(Link.user_id == user_id)

        async with self._database.session() as session:
            total = (await session.execute(count_query)).scalar() or 0

            offset = (page - 1) * page_size
            query = query.order_by(Link.created_at.desc(), Link.id).offset(offset).limit(page_size)
            result = await session.execute(query)
            links = list(result.scalars().all())

        return links, total

    async def _is_address_available(self, session, address: str) -> bool:
        if address.lower() in RESERVED_ADDRESSES:
            return False
        result = await session.execute(select(Link.id).where(Link.address == address))
        return result.scalar_one_or_none() is None

    async def _generate_unique_address(self, session) -> str:
        for _ in range(self._max_address_attempts):
            address = generate_address()
            if await self._is_address_available(session, address):
                return address
        raise ValueError("Unable to generate unique short address")

    async def create(
        self,
        user_id: UUID,
        target: str,
        address: str | None = None,
        description: str | None = None,
    ) -> Link:
        """Create a new short link.

        Raises AddressTakenError if a custom address is reserved or in use.
        """
        async with self._database.session() as session:
            if address:
                if not await self._is_address_available(session, address):
                    raise AddressTakenError(address)
            else:
                address = await self._generate_unique_address(session)

            link = Link(
                user_id=user_id,
                address=address,
                target=target,
                description=description,
            )
            session.add(link)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise AddressTakenError(address) from e
            await session.refresh(link)

        logger.info("Link created", link_id=str(link.id), address=address, user_id=str(user_id))
        return link

    async def delete(self, link: Link) -> None:
        """Delete a link together with its visit aggregates."""
        async with self._database.session() as session:
            async with session.begin():
                await session.execute(
                    delete(VisitAggregate).where(VisitAggregate.link_id == link.id)
                )
                await session.execute(delete(Link).where(Link.id == link.id))
        logger.info("Link deleted", link_id=str(link.id), address=link.address)

    async def increment_visit_count(self, link_id: UUID) -> None:
        """Atomically bump the denormalized visit counter."""
        async with self._database.session() as session:
            async with session.begin():
                await session.execute(
                    update(Link)
                    .where(Link.id == link_id)
                    .values(visit_count=Link.visit_count + 1)
                )
