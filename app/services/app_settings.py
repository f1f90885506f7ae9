from __future__ import annotations

from typing import Dict

from sqlalchemy import select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.logger import get_logger
from app.models.app_setting import AppSetting

_logger = get_logger("services.app_settings")


async def get_settings_map(session: AsyncSession) -> Dict[str, str]:
    result = await session.execute(select(AppSetting))
    return {item.key: item.value for item in result.scalars().all()}


async def upsert_settings(session: AsyncSession, updates: Dict[str, str]) -> bool:
    clean_updates = {str(key).strip(): str(value) for key, value in updates.items() if str(key).strip()}
    if not clean_updates:
        return False
    keys = list(clean_updates)

    result = await session.execute(select(AppSetting).where(AppSetting.key.in_(keys)))
    existing_by_key = {row.key: row for row in result.scalars().all()}
    changed_keys = [
        key
        for key in keys
        if existing_by_key.get(key) is None or existing_by_key[key].value != clean_updates[key]
    ]
    if not changed_keys:
        return False

    dialect_name = session.bind.dialect.name if session.bind is not None else ""
    if dialect_name == "sqlite":
        stmt = sqlite_insert(AppSetting).values(
            [{"key": key, "value": clean_updates[key]} for key in changed_keys]
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[AppSetting.key],
            set_={"value": stmt.excluded.value},
        )
        await session.execute(stmt)
    else:
        for key in changed_keys:
            setting = existing_by_key.get(key)
            if setting is None:
                session.add(AppSetting(key=key, value=clean_updates[key]))
            else:
                setting.value = clean_updates[key]

    await session.commit()
    _logger.info(
        "app_settings.upsert",
        "Updated app settings",
        count=len(keys),
        changed=len(changed_keys),
    )
    return True
