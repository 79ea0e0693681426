from .base import Base
from .models import upload_session

__all__ = ["Base", "upload_session"]
