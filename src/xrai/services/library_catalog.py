from __future__ import annotations

from typing import Dict, List, Optional

from ..domain.library_models import CodeLanguage, Library3D

# Shared textual protocol between the model output and the client; the code
# extractor strips these markers again.
_CONTROL_PROTOCOL = (
    "When you answer with code:\n"
    "1. Briefly explain what you are building.\n"
    "2. Provide the complete, runnable code wrapped in [INSERT_CODE]```{fence}\\ncode here\\n```[/INSERT_CODE]\n"
    "3. Keep all code in a single fenced block.\n"
    "4. Add [RUN_SCENE] at the end so the scene runs automatically."
)


def _prompt(role: str, rules: List[str], fence: str) -> str:
    lines = [role, ""]
    lines.extend(f"- {rule}" for rule in rules)
    lines.append("")
    lines.append(_CONTROL_PROTOCOL.format(fence=fence))
    return "\n".join(lines)


# NOTE: Keep descriptors concise; the long per-library prompt packs are static
# content owned by the client applications.
_LIBRARIES: List[Library3D] = [
    Library3D(
        library_id="babylonjs",
        display_name="Babylon.js",
        description="Professional WebGL/WebXR engine with a rich feature set",
        version="v8.22.3",
        code_language=CodeLanguage.JAVASCRIPT,
        documentation_url="https://doc.babylonjs.com/",
        features=["webgl", "webxr", "physics", "animation", "lighting", "materials", "post_processing"],
        system_prompt=_prompt(
            "You are an expert Babylon.js assistant that builds interactive 3D scenes for the playground.",
            [
                "Always define `const createScene = () => { ... }` and return the scene.",
                "Reuse the playground `engine` and `canvas`; never create your own engine or render loop.",
                "Use BABYLON.MeshBuilder for primitives and attach camera controls with attachControl(canvas, true).",
            ],
            "javascript",
        ),
        default_scene_code=(
            "const createScene = () => {\n"
            "    const scene = new BABYLON.Scene(engine);\n"
            "    const camera = new BABYLON.ArcRotateCamera(\"camera\", -Math.PI / 2, Math.PI / 2.5, 6, BABYLON.Vector3.Zero(), scene);\n"
            "    camera.attachControl(canvas, true);\n"
            "    new BABYLON.HemisphericLight(\"light\", new BABYLON.Vector3(0, 1, 0), scene);\n"
            "    BABYLON.MeshBuilder.CreateBox(\"box\", { size: 1 }, scene);\n"
            "    return scene;\n"
            "};\n"
        ),
    ),
    Library3D(
        library_id="threejs",
        display_name="Three.js",
        description="Popular, lightweight 3D library with large community",
        version="r160",
        code_language=CodeLanguage.JAVASCRIPT,
        documentation_url="https://threejs.org/docs/",
        features=["webgl", "webxr", "animation", "lighting", "materials"],
        system_prompt=_prompt(
            "You are an expert Three.js assistant that builds interactive 3D scenes.",
            [
                "Create the renderer, scene and camera yourself and append renderer.domElement to document.body.",
                "Drive animation with renderer.setAnimationLoop.",
                "Handle window resize events.",
            ],
            "javascript",
        ),
        default_scene_code=(
            "const scene = new THREE.Scene();\n"
            "const camera = new THREE.PerspectiveCamera(75, window.innerWidth / window.innerHeight, 0.1, 1000);\n"
            "const renderer = new THREE.WebGLRenderer({ antialias: true });\n"
            "renderer.setSize(window.innerWidth, window.innerHeight);\n"
            "document.body.appendChild(renderer.domElement);\n"
            "const cube = new THREE.Mesh(new THREE.BoxGeometry(), new THREE.MeshNormalMaterial());\n"
            "scene.add(cube);\n"
            "camera.position.z = 3;\n"
            "renderer.setAnimationLoop(() => {\n"
            "    cube.rotation.y += 0.01;\n"
            "    renderer.render(scene, camera);\n"
            "});\n"
        ),
    ),
    Library3D(
        library_id="aframe",
        display_name="A-Frame",
        description="Declarative HTML framework for building WebXR experiences",
        version="v1.7.0",
        code_language=CodeLanguage.HTML,
        documentation_url="https://aframe.io/docs/",
        features=["webxr", "vr", "ar", "declarative"],
        system_prompt=_prompt(
            "You are an expert A-Frame assistant that builds WebXR scenes with HTML entities.",
            [
                "Return a complete <a-scene> document including the A-Frame script tag.",
                "Prefer primitives (<a-box>, <a-sphere>, <a-sky>) and component attributes over JavaScript.",
            ],
            "html",
        ),
        default_scene_code=(
            "<html>\n"
            "  <head>\n"
            "    <script src=\"https://aframe.io/releases/1.7.0/aframe.min.js\"></script>\n"
            "  </head>\n"
            "  <body>\n"
            "    <a-scene>\n"
            "      <a-box position=\"0 1 -3\" rotation=\"0 45 0\" color=\"#4CC3D9\"></a-box>\n"
            "      <a-sky color=\"#ECECEC\"></a-sky>\n"
            "    </a-scene>\n"
            "  </body>\n"
            "</html>\n"
        ),
    ),
    Library3D(
        library_id="react-three-fiber",
        display_name="React Three Fiber",
        description="React renderer for Three.js with declarative components",
        version="8.15+",
        code_language=CodeLanguage.TYPESCRIPT,
        documentation_url="https://docs.pmnd.rs/react-three-fiber",
        features=["webgl", "declarative", "animation"],
        requires_build=True,
        system_prompt=_prompt(
            "You are an expert React Three Fiber assistant that writes declarative 3D React components.",
            [
                "Export a default App component rendering a <Canvas>.",
                "Use hooks such as useFrame for animation and @react-three/drei helpers where useful.",
            ],
            "tsx",
        ),
        default_scene_code=(
            "import { Canvas } from '@react-three/fiber'\n"
            "\n"
            "export default function App() {\n"
            "  return (\n"
            "    <Canvas>\n"
            "      <ambientLight />\n"
            "      <mesh>\n"
            "        <boxGeometry />\n"
            "        <meshStandardMaterial color=\"orange\" />\n"
            "      </mesh>\n"
            "    </Canvas>\n"
            "  )\n"
            "}\n"
        ),
    ),
    Library3D(
        library_id="reactylon",
        display_name="Reactylon",
        description="React renderer for Babylon.js with declarative XR components",
        version="1.0+",
        code_language=CodeLanguage.TYPESCRIPT,
        documentation_url="https://github.com/ReDI-School/reactylon",
        features=["webxr", "declarative", "physics"],
        requires_build=True,
        system_prompt=_prompt(
            "You are an expert Reactylon assistant that writes declarative Babylon.js scenes in React.",
            [
                "Export a default App component rendering <Engine> and <Scene>.",
                "Use lowercase Babylon primitives such as <box> and <hemisphericLight>.",
            ],
            "tsx",
        ),
        default_scene_code=(
            "import { Engine } from 'reactylon/web'\n"
            "import { Scene } from 'reactylon'\n"
            "\n"
            "export default function App() {\n"
            "  return (\n"
            "    <Engine antialias>\n"
            "      <Scene>\n"
            "        <hemisphericLight name=\"light\" direction={[0, 1, 0]} />\n"
            "        <box name=\"box\" options={{ size: 1 }} />\n"
            "      </Scene>\n"
            "    </Engine>\n"
            "  )\n"
            "}\n"
        ),
    ),
]

_ALIASES: Dict[str, str] = {
    "babylon": "babylonjs",
    "three": "threejs",
    "a-frame": "aframe",
    "reactthreefiber": "react-three-fiber",
    "r3f": "react-three-fiber",
}


def list_libraries() -> List[Library3D]:
    return list(_LIBRARIES)


def get_library(library_id: Optional[str]) -> Optional[Library3D]:
    if not library_id:
        return None
    key = library_id.strip().lower()
    key = _ALIASES.get(key, key)
    for library in _LIBRARIES:
        if library.library_id == key:
            return library
    return None


def build_system_prompt(
    library: Optional[Library3D],
    current_code: Optional[str] = None,
    override: Optional[str] = None,
) -> str:
    """Compose the system prompt for a turn.

    ``override`` replaces the library prompt entirely (user-customised prompt);
    the current editor code is appended as context either way.
    """
    if override and override.strip():
        base = override.strip()
    elif library is not None:
        base = library.system_prompt
    else:
        base = "You are a helpful assistant for building 3D and WebXR scenes."
    if current_code and current_code.strip():
        fence = library.code_language.value if library is not None else ""
        base += f"\n\nCurrent code in editor:\n```{fence}\n{current_code.strip()}\n```"
    return base
