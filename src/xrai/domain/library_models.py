from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel


class CodeLanguage(str, Enum):
    JAVASCRIPT = "javascript"
    TYPESCRIPT = "typescript"
    HTML = "html"

    @property
    def extension(self) -> str:
        return {"javascript": "js", "typescript": "tsx", "html": "html"}[self.value]


@dataclass(frozen=True)
class Library3D:
    library_id: str
    display_name: str
    description: str
    version: str
    code_language: CodeLanguage
    system_prompt: str
    default_scene_code: str
    documentation_url: Optional[str] = None
    features: List[str] = field(default_factory=list)
    requires_build: bool = False


class LibraryInfo(BaseModel):
    library_id: str
    display_name: str
    description: str
    version: str
    code_language: CodeLanguage
    file_extension: str
    documentation_url: Optional[str] = None
    features: List[str] = []
    requires_build: bool = False
    default_scene_code: str

    @classmethod
    def from_library(cls, library: Library3D) -> "LibraryInfo":
        return cls(
            library_id=library.library_id,
            display_name=library.display_name,
            description=library.description,
            version=library.version,
            code_language=library.code_language,
            file_extension=library.code_language.extension,
            documentation_url=library.documentation_url,
            features=list(library.features),
            requires_build=library.requires_build,
            default_scene_code=library.default_scene_code,
        )
