import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Dict, List

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RankStatus(str, Enum):
    """Search filter values understood by /beatmapsets/search (`s=`)."""

    GRAVEYARD = "graveyard"
    WIP = "wip"
    PENDING = "pending"
    RANKED = "ranked"
    APPROVED = "approved"
    QUALIFIED = "qualified"
    LOVED = "loved"


# =========================================================================
# WIRE MODELS
# =========================================================================

class Beatmap(BaseModel):
    """One difficulty inside a beatmapset. Its id is what /osu/{id} serves."""

    model_config = ConfigDict(extra="ignore")

    id: int
    version: str
    difficulty_rating: float = 0.0


class Beatmapset(BaseModel):
    """A catalog record as returned by the search endpoint."""

    model_config = ConfigDict(extra="ignore")

    id: int
    artist: str = ""
    artist_unicode: str = ""
    title: str = ""
    title_unicode: str = ""
    creator: str = ""
    user_id: int = 0
    covers: Dict[str, str] = Field(default_factory=dict)
    beatmaps: List[Beatmap] = Field(default_factory=list)
    last_updated: datetime

    @field_validator("last_updated")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class BeatmapSearch(BaseModel):
    model_config = ConfigDict(extra="ignore")

    beatmapsets: List[Beatmapset] = Field(default_factory=list)


# =========================================================================
# PIPELINE MODELS
# =========================================================================

# Characters that are invalid in filenames on at least one common filesystem
_UNSAFE_FILENAME = re.compile(r'[\\/:*?"<>|\x00-\x1f]')

# NAME_MAX on common filesystems, in bytes
MAX_FILENAME_BYTES = 255


def safe_filename(name: str, max_bytes: int = MAX_FILENAME_BYTES) -> str:
    cleaned = _UNSAFE_FILENAME.sub("_", name).strip()
    encoded = cleaned.encode("utf-8")
    if len(encoded) > max_bytes:
        # Cut on a character boundary
        cleaned = encoded[:max_bytes].decode("utf-8", errors="ignore").strip()
    cleaned = cleaned.rstrip(".")
    return cleaned or "unnamed"


class FileRef(BaseModel):
    """A file to fetch for a record and the name it is stored under."""

    file_id: int
    filename: str


class ChangedRecord(BaseModel):
    """
    A beatmapset that changed upstream, reduced to what ingestion needs:
    commit authorship, the last-modified timestamp and the files to fetch.
    """

    id: int
    title: str = ""
    artist: str = ""
    creator: str = ""
    user_id: int = 0
    last_updated: datetime
    files: List[FileRef] = Field(default_factory=list)

    @classmethod
    def from_beatmapset(cls, beatmapset: Beatmapset) -> "ChangedRecord":
        files: List[FileRef] = []
        seen = set()
        for beatmap in beatmapset.beatmaps:
            # Leave room for the " {id}.osu" suffix a duplicate name gets
            suffix_bytes = len(f" {beatmap.id}.osu".encode("utf-8"))
            stem = safe_filename(
                f"{beatmapset.artist} - {beatmapset.title} "
                f"({beatmapset.creator}) [{beatmap.version}]",
                max_bytes=MAX_FILENAME_BYTES - suffix_bytes,
            )
            filename = f"{stem}.osu"
            if filename.lower() in seen:
                filename = f"{stem} {beatmap.id}.osu"
            seen.add(filename.lower())
            files.append(FileRef(file_id=beatmap.id, filename=filename))

        return cls(
            id=beatmapset.id,
            title=beatmapset.title,
            artist=beatmapset.artist,
            creator=beatmapset.creator,
            user_id=beatmapset.user_id,
            last_updated=beatmapset.last_updated,
            files=files,
        )


class BaseCatalog(ABC):
    """
    Abstract base class for catalog connectors the poller can drive.
    """

    @abstractmethod
    async def search(self, status: RankStatus = RankStatus.PENDING) -> List[ChangedRecord]:
        """
        Returns every record currently listed under the given status.
        """

    @abstractmethod
    def download_file(self, file_id: int) -> AsyncIterator[bytes]:
        """
        Streams the raw content of one file.
        """
