import argparse
import asyncio
import datetime
import logging

from trainai.config import config
from trainai.db.session import SessionLocal
from trainai.services.storage_service import get_object_store
from trainai.services.upload_service import UploadService

logger = logging.getLogger("expire_uploads")


async def expire_uploads(dry_run: bool, grace_minutes: int = 0) -> int:
    now = datetime.datetime.now(datetime.UTC) - datetime.timedelta(minutes=grace_minutes)
    logger.info("[expire] start cutoff=%s dry_run=%s backend=%s", now.isoformat(), dry_run, config.STORAGE_BACKEND)

    async with SessionLocal() as db:
        uploads = UploadService(db, get_object_store())
        expired = await uploads.expire_sessions(now=now, dry_run=dry_run)

    logger.info("[expire] done sessions=%d", expired)
    return expired


if __name__ == '__main__':
    parser = argparse.ArgumentParser(
        description="Delete unfinished TrainAI upload sessions past their expiry, "
                    "together with the chunk objects they left in storage."
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only report the sessions that would be expired."
    )
    parser.add_argument(
        "--grace-minutes",
        type=int,
        default=0,
        help="Keep sessions that expired less than this many minutes ago."
    )
    args = parser.parse_args()

    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    asyncio.run(expire_uploads(dry_run=args.dry_run, grace_minutes=args.grace_minutes))
