from __future__ import annotations

from typing import List

from fastapi import APIRouter, HTTPException, status

from ...domain.library_models import LibraryInfo
from ...services.library_catalog import get_library, list_libraries

router = APIRouter(prefix="/libraries", tags=["libraries"])


@router.get("", response_model=List[LibraryInfo])
def list_all() -> List[LibraryInfo]:
    return [LibraryInfo.from_library(lib) for lib in list_libraries()]


@router.get("/{library_id}", response_model=LibraryInfo)
def get_one(library_id: str) -> LibraryInfo:
    library = get_library(library_id)
    if library is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Library not found")
    return LibraryInfo.from_library(library)
