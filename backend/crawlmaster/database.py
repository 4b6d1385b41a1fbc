from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from crawlmaster.config import settings
from crawlmaster.models import Base

engine = create_async_engine(settings.database_url, pool_pre_ping=True)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_models(bind=None) -> None:
    """Create the shared tables. Per-task tables are created by their stores."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def insert_ignoring_conflicts(
    db: AsyncSession, model, rows: list[dict], index_elements: list[str]
) -> int:
    """Bulk insert that skips rows colliding on a unique column."""
    if not rows:
        return 0
    dialect = postgresql if db.get_bind().dialect.name == "postgresql" else sqlite
    stmt = dialect.insert(model).values(rows).on_conflict_do_nothing(index_elements=index_elements)
    result = await db.execute(stmt)
    await db.commit()
    return max(result.rowcount, 0)
