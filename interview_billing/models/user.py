import hashlib
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    external_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    username: Optional[str] = None
    image_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @staticmethod
    def fallback_handle(external_id: str) -> str:
        # Deterministic fallback handle
        h = hashlib.sha1(external_id.encode("utf-8")).hexdigest()
        return f"@u_{h[-6:]}"
