from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class KeysRequest(BaseModel):
    keys: List[str]

class ValueRequest(BaseModel):
    value: Any = None

class ValuesRequest(BaseModel):
    values: Dict[str, Any]

class IdentifiableItem(BaseModel):
    value: Any = None
    version: str

class CasItem(BaseModel):
    version: str = Field(pattern=r"^[0-9a-fA-F]{32}$")
    value: Any = None
    ttl_seconds: int = Field(default=0, ge=0)

class CasRequest(BaseModel):
    puts: Dict[str, CasItem]

class CasResult(BaseModel):
    succeeded: List[str]
    failed: List[str]

class ValueResponse(BaseModel):
    key: str
    value: Optional[Any] = None
