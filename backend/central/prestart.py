"""
应用启动前脚本

1. 等待数据库就绪（Docker Compose 启动时数据库容器可能还在初始化）
2. 如果配置了 SEED_CATALOG_PATH，把 JSON 中的产品与套餐写入数据库

运行方式（在 alembic upgrade head 之后）：
    python -m central.prestart
"""
import json
import logging
from pathlib import Path
from typing import Any

from sqlalchemy import Engine
from sqlmodel import Session, select
from tenacity import after_log, before_log, retry, stop_after_attempt, wait_fixed

from central.core.config import settings
from central.core.db import engine
from central.core.snowflake import generate_id
from central.crud import catalog as catalog_crud
from central.models import utc_now

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

max_tries = 60 * 5  # 5 分钟，每秒一次
wait_seconds = 1


@retry(
    stop=stop_after_attempt(max_tries),
    wait=wait_fixed(wait_seconds),
    before=before_log(logger, logging.INFO),
    after=after_log(logger, logging.WARN),
)
def wait_for_db(db_engine: Engine) -> None:
    try:
        with Session(db_engine) as session:
            session.exec(select(1))
    except Exception as e:
        logger.error(e)
        raise e


def load_catalog(path: str | Path) -> dict[str, list[dict[str, Any]]]:
    """
    读取初始产品/套餐文件

    格式：{"products": [{...}], "bundles": [{...}]}，字段名与数据库列一致。
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    return {
        "products": list(data.get("products") or []),
        "bundles": list(data.get("bundles") or []),
    }


def seed_catalog(session: Session, catalog: dict[str, list[dict[str, Any]]]) -> None:
    """
    写入产品与套餐（产品按 ID、套餐按 slug 幂等更新）

    先写产品，再校验套餐引用的产品都存在。
    """
    now = utc_now()
    for product in catalog["products"]:
        catalog_crud.upsert_product(
            session=session, data={"created_at": now, **product}
        )
    session.flush()

    for bundle in catalog["bundles"]:
        product_ids = catalog_crud.require_products(
            session=session, product_ids=bundle.get("product_ids") or []
        )
        catalog_crud.upsert_bundle(
            session=session,
            data={"id": generate_id(), "created_at": now, **bundle, "product_ids": product_ids},
        )
    session.commit()
    logger.info(
        "Seeded %d products and %d bundles",
        len(catalog["products"]),
        len(catalog["bundles"]),
    )


def main() -> None:
    logger.info("Waiting for database")
    wait_for_db(engine)
    if settings.SEED_CATALOG_PATH:
        logger.info("Seeding catalog from %s", settings.SEED_CATALOG_PATH)
        with Session(engine) as session:
            seed_catalog(session, load_catalog(settings.SEED_CATALOG_PATH))
    logger.info("Service finished initializing")


if __name__ == "__main__":  # pragma: no cover
    main()
