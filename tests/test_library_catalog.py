from __future__ import annotations

from src.xrai.domain.library_models import CodeLanguage, LibraryInfo
from src.xrai.services import code_extractor
from src.xrai.services.library_catalog import build_system_prompt, get_library, list_libraries


def test_builtin_libraries():
    ids = [lib.library_id for lib in list_libraries()]
    assert ids == ["babylonjs", "threejs", "aframe", "react-three-fiber", "reactylon"]
    assert get_library("aframe").code_language is CodeLanguage.HTML
    assert get_library("reactylon").requires_build is True


def test_lookup_is_case_insensitive_with_aliases():
    assert get_library("BabylonJS").library_id == "babylonjs"
    assert get_library("r3f").library_id == "react-three-fiber"
    assert get_library("three").library_id == "threejs"
    assert get_library("unknown") is None
    assert get_library(None) is None


def test_system_prompt_mentions_control_tokens():
    prompt = build_system_prompt(get_library("threejs"))
    assert "[INSERT_CODE]" in prompt and "[RUN_SCENE]" in prompt


def test_system_prompt_appends_current_code():
    prompt = build_system_prompt(get_library("babylonjs"), current_code="const a = 1;\n")
    assert prompt.endswith("Current code in editor:\n```javascript\nconst a = 1;\n```")


def test_override_replaces_library_prompt():
    prompt = build_system_prompt(get_library("babylonjs"), override="Be terse.")
    assert prompt == "Be terse."


def test_default_scene_code_is_extractable():
    for lib in list_libraries():
        fenced = f"```{lib.code_language.value}\n{lib.default_scene_code}```"
        assert code_extractor.extract(fenced) == lib.default_scene_code.strip()


def test_library_info_exposes_extension():
    info = LibraryInfo.from_library(get_library("react-three-fiber"))
    assert info.file_extension == "tsx"
    assert info.version == "8.15+"
