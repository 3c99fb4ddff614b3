from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class BlockedDomainsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    count: int
    last_updated: Optional[datetime] = Field(None, alias="lastUpdated")
    domains: List[str]


class BlockedPatternsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    domains: List[str]
    paths: List[str]
    keywords: List[str]
    last_updated: Optional[datetime] = Field(None, alias="lastUpdated")


class StoredCookie(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    key: str
    value: str
    domain: str
    path: str
    expires: Optional[datetime] = None
    secure: bool
    http_only: bool = Field(alias="httpOnly")
