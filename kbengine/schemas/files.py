from datetime import datetime
from pathlib import Path
from typing import Optional
from pydantic import BaseModel


class FileInfo(BaseModel):
    file_path: Path
    file_hash: str
    file_extension: str
    file_size: int
    modified_at: Optional[datetime] = None
