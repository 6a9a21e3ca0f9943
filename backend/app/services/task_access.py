from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.postgres.models.tasks import Task


async def get_task_for_user(
    db: AsyncSession,
    task_id: str,
    user_id: str,
    is_admin: bool = False,
) -> Optional[Task]:
    """Visible task owned by ``user_id``; admins see any non-deleted task."""
    query = select(Task).where(Task.id == task_id, Task.deleted_at.is_(None))
    if not is_admin:
        query = query.where(Task.user_id == user_id)
    result = await db.execute(query.limit(1))
    return result.scalar_one_or_none()
