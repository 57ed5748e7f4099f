from pydantic import BaseModel, ConfigDict, Field
from typing import Literal


class MetadataFrame(BaseModel):
    """The text frame announcing a file, sent once before its chunk frames."""
    model_config = ConfigDict(populate_by_name=True)

    kind: Literal["metadata"] = "metadata"
    file_name: str = Field(alias="fileName")
    file_size: int = Field(alias="fileSize", ge=0, strict=True)
    mime_type: str = Field("application/octet-stream", alias="mimeType")

    def to_wire(self) -> str:
        return self.model_dump_json(by_alias=True)
