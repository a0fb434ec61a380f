import re
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_LOGO_URL = "/channel-placeholder.svg"


class CatalogModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CatalogRequest(CatalogModel):
    category_id: str = Field(..., description="Category the channels belong to.", alias="categoryId")
    category_name: str = Field(..., description="Display name of the category.", alias="categoryName")
    m3u_url: str = Field(..., description="URL of the M3U playlist to extract channels from.", alias="m3uUrl")


class CatalogChannel(CatalogModel):
    id: str = Field(..., description="Channel id derived from category, sanitized name and list position.")
    name: str
    logo_url: str = Field(DEFAULT_LOGO_URL, alias="logoUrl")
    stream_url: str = Field(..., alias="streamUrl")
    category_id: str = Field(..., alias="categoryId")
    category_name: str = Field(..., alias="categoryName")


class CatalogResponse(CatalogModel):
    channels: list[CatalogChannel] = Field(default_factory=list)
    error: Optional[str] = None


def channel_id(category_id: str, name: str, position: int) -> str:
    """
    Build the id the catalog service assigns to a channel.

    The id depends on the channel's position in the playlist, so reordering the upstream list
    changes the ids of unrelated entries.
    """
    sanitized = re.sub(r"[^a-zA-Z0-9]", "_", name).lower()
    return f"{category_id}_{sanitized}_{position}"
