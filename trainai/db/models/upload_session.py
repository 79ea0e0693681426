import datetime
from enum import StrEnum

import sqlalchemy as sa

from trainai.config import config
from trainai.db.base import Base


class UploadStatus(StrEnum):
    OPEN = "open"
    FINALIZING = "finalizing"
    FINALIZED = "finalized"


def _default_expiry() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC) + datetime.timedelta(minutes=config.UPLOAD_SESSION_TTL_MIN)


class UploadSession(Base):
    __tablename__ = "upload_sessions"

    id = sa.Column(sa.String(255), primary_key=True)
    owner_id = sa.Column(sa.String(255), nullable=False, index=True)

    upload_path = sa.Column(sa.Text, nullable=False)
    file_name = sa.Column(sa.Text, nullable=False)
    file_size = sa.Column(sa.BigInteger, nullable=False)
    file_type = sa.Column(sa.Text, nullable=False)

    status = sa.Column(sa.String(16), nullable=False, default=UploadStatus.OPEN.value, index=True)

    final_path = sa.Column(sa.Text, nullable=True)
    final_url = sa.Column(sa.Text, nullable=True)
    final_size = sa.Column(sa.BigInteger, nullable=True)
    chunks_processed = sa.Column(sa.Integer, nullable=True)

    created_at = sa.Column(sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)
    updated_at = sa.Column(sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False)
    expires_at = sa.Column(sa.DateTime(timezone=True), default=_default_expiry, nullable=False)

    def is_expired(self, now: datetime.datetime) -> bool:
        expires_at = self.expires_at
        # SQLite hands timestamps back without tzinfo
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=datetime.UTC)

        return expires_at <= now
