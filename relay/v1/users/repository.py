from sqlalchemy import and_, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from relay.config.logging import get_logger
from relay.infra.database import Database, run_in_transaction
from relay.v1.users.models import user_roles

logger = get_logger(__name__)


class RoleMembershipRepository:
    """Resolves which users belong to a role."""

    def __init__(self, database: Database):
        self.database = database

    async def find_user_ids(self, role_id: int) -> set[int]:
        """IDs of every user holding ``role_id``."""
        async with self.database.session_scope() as session:
            result = await session.execute(
                select(user_roles.c.user_id).where(user_roles.c.role_id == role_id)
            )
            return set(result.scalars().all())

    async def add_member(self, role_id: int, user_id: int) -> bool:
        """
        Grant a role to a user.

        Returns False if the user already had it. The check and insert run in
        one serializable transaction retried on conflicts.
        """

        async def grant(session: AsyncSession) -> bool:
            existing = await session.execute(
                select(user_roles.c.user_id).where(
                    and_(
                        user_roles.c.role_id == role_id,
                        user_roles.c.user_id == user_id,
                    )
                )
            )
            if existing.first() is not None:
                return False

            await session.execute(
                insert(user_roles).values(role_id=role_id, user_id=user_id)
            )
            return True

        added = await run_in_transaction(self.database, grant)
        if added:
            logger.info("Role granted", role_id=role_id, user_id=user_id)
        return added
