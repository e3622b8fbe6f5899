"""Record and storage object models."""

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field

from ..utils import basename, clean_path


def utcnow() -> datetime:
    return datetime.now(UTC)


class ObjectKey(BaseModel):
    """(location, path) pair identifying a physical storage object."""

    model_config = ConfigDict(frozen=True)

    location: str
    path: str

    def __str__(self) -> str:
        return f"{self.location}:{self.path}"


class Record(BaseModel):
    """Metadata entry describing a file-backed resource."""

    id: str = Field(description="Stable record identifier")
    filename: str = Field(description="Logical filename")
    location: str = Field(description="Owning location name")
    path: str = Field(description="Object path inside the location, including the stored file name")
    size: int = Field(default=0, ge=0)
    fingerprint: str | None = Field(default=None, description="Optional content hash")
    modified_at: datetime = Field(default_factory=utcnow)
    live: bool = Field(default=True, description="Referenced by active application content")

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(location=self.location, path=clean_path(self.path))

    @property
    def stored_name(self) -> str:
        """File name component of ``path`` (falls back to the logical filename)."""
        return basename(self.path) or self.filename

    def pointer(self) -> dict[str, str]:
        return {"location": self.location, "path": clean_path(self.path)}


class ObjectMeta(BaseModel):
    """Storage object discovered by listing a location."""

    model_config = ConfigDict(frozen=True)

    location: str
    path: str
    size: int = 0
    modified_at: datetime | None = None

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(location=self.location, path=clean_path(self.path))

    @property
    def filename(self) -> str:
        return basename(self.path)

    @property
    def modified_ts(self) -> float:
        return self.modified_at.timestamp() if self.modified_at else 0.0
