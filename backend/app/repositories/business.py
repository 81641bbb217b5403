from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Business, Category
from app.repositories.base import BaseRepository


class CategoryRepository(BaseRepository[Category]):
    def __init__(self, session: AsyncSession):
        super().__init__(Category, session)


class BusinessRepository(BaseRepository[Business]):
    def __init__(self, session: AsyncSession):
        super().__init__(Business, session)

    async def get_by_id(self, business_id: UUID) -> Business | None:
        return await self.get(business_id)
