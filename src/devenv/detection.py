"""Project detection.

Scans a project directory for signature files and turns them into a
``ProjectProfile``. Every signature belongs to a specificity rank; for each
language, framework or tool the highest-ranked match decides, and the
version comes from the highest-ranked match that carries one.
"""

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import tomli
import yaml

from devenv.config import PROJECT_CONFIG_FILE, load_project_config
from devenv.errors import ConfigurationError, DetectionAmbiguous
from devenv.logging import get_logger
from devenv.types import Detection, DetectionKind, ProjectProfile

logger = get_logger(__name__)

DEFAULT_THRESHOLD = 0.5

RANK_CI = 0
RANK_MANIFEST = 1
RANK_LOCKFILE = 2
RANK_FRAMEWORK = 3
RANK_VERSION_FILE = 4
RANK_DECLARATION = 5

LANGUAGE = DetectionKind.LANGUAGE
FRAMEWORK = DetectionKind.FRAMEWORK
TOOL = DetectionKind.TOOL

# package -> framework name, per language
NODE_FRAMEWORKS = {
    "next": "next",
    "react": "react",
    "vue": "vue",
    "nuxt": "nuxt",
    "svelte": "svelte",
    "@angular/core": "angular",
    "express": "express",
    "@nestjs/core": "nestjs",
}
PYTHON_FRAMEWORKS = {
    "django": "django",
    "flask": "flask",
    "fastapi": "fastapi",
    "pyramid": "pyramid",
    "tornado": "tornado",
}
RUST_FRAMEWORKS = {"actix-web": "actix", "axum": "axum", "rocket": "rocket"}
GO_FRAMEWORKS = {
    "github.com/gin-gonic/gin": "gin",
    "github.com/labstack/echo": "echo",
    "github.com/gofiber/fiber": "fiber",
}

# .tool-versions (asdf) plugin names
ASDF_NAMES = {
    "nodejs": ("node", LANGUAGE),
    "node": ("node", LANGUAGE),
    "python": ("python", LANGUAGE),
    "golang": ("go", LANGUAGE),
    "go": ("go", LANGUAGE),
    "rust": ("rust", LANGUAGE),
    "bun": ("bun", TOOL),
    "pnpm": ("pnpm", TOOL),
    "yarn": ("yarn", TOOL),
}

# CI setup actions -> (language, version input)
SETUP_ACTIONS = {
    "actions/setup-node": ("node", "node-version"),
    "actions/setup-python": ("python", "python-version"),
    "actions/setup-go": ("go", "go-version"),
    "oven-sh/setup-bun": ("bun", "bun-version"),
    "pnpm/action-setup": ("pnpm", "version"),
}
CI_IMAGES = {"node": "node", "python": "python", "golang": "go", "rust": "rust"}

SKIP_DIRS = {".git", "node_modules", ".venv", "__pycache__"}
_REQUIREMENT_NAME = re.compile(r"^\s*([A-Za-z0-9_.\-]+)\s*(?:\[[^\]]*\])?\s*([^;#]*)")


@dataclass(frozen=True)
class Match:
    """One signature hit before resolution"""
    name: str
    kind: DetectionKind
    version: Optional[str]
    confidence: float
    source: str
    rank: int
    language: Optional[str] = None


Parser = Callable[[Path, str, int], List[Match]]


def _clean_version(raw: Any) -> Optional[str]:
    if raw is None or isinstance(raw, (list, dict, bool)):
        return None
    text = str(raw).strip()
    if not text:
        return None
    if re.match(r"^v\d", text):
        text = text[1:]
    return text


def _read_text(path: Path) -> str:
    return path.read_text(encoding="utf-8", errors="replace")


def _read_toml(path: Path) -> Dict[str, Any]:
    try:
        return tomli.loads(_read_text(path))
    except tomli.TOMLDecodeError as e:
        logger.warning("manifest_unreadable", path=str(path), error=str(e))
        return {}


def _requirement_name(spec: str) -> Tuple[str, Optional[str]]:
    match = _REQUIREMENT_NAME.match(spec)
    if not match:
        return "", None
    return match.group(1).lower(), _clean_version(match.group(2))


def _frameworks(
    deps: Dict[str, Optional[str]], table: Dict[str, str], language: str, source: str
) -> List[Match]:
    return [
        Match(table[dep], FRAMEWORK, _clean_version(version), 0.9, source, RANK_FRAMEWORK, language)
        for dep, version in sorted(deps.items())
        if dep in table
    ]


def _table(data: Any, key: str) -> Dict[str, Any]:
    """``data[key]`` when it is a mapping; malformed manifests yield an empty one."""
    value = data.get(key) if isinstance(data, dict) else None
    return value if isinstance(value, dict) else {}


def parse_package_json(path: Path, source: str, rank: int) -> List[Match]:
    try:
        data = json.loads(_read_text(path))
    except json.JSONDecodeError as e:
        logger.warning("manifest_unreadable", path=str(path), error=str(e))
        data = {}
    if not isinstance(data, dict):
        data = {}

    engines = _table(data, "engines")
    matches = [Match("node", LANGUAGE, _clean_version(engines.get("node")), 0.8, source, rank)]
    for tool in ("pnpm", "yarn", "bun"):
        if tool in engines:
            matches.append(Match(tool, TOOL, _clean_version(engines[tool]), 0.8, source, rank))

    manager = data.get("packageManager")
    if isinstance(manager, str) and "@" in manager:
        name, _, version = manager.partition("@")
        if name in ("pnpm", "yarn", "bun"):
            matches.append(Match(name, TOOL, _clean_version(version.split("+")[0]), 0.9, source, rank))

    deps: Dict[str, Optional[str]] = {}
    for key in ("dependencies", "devDependencies"):
        section = data.get(key)
        if isinstance(section, dict):
            deps.update({str(k): v for k, v in section.items()})
    matches.extend(_frameworks(deps, NODE_FRAMEWORKS, "node", source))
    return matches


def parse_pyproject(path: Path, source: str, rank: int) -> List[Match]:
    data = _read_toml(path)
    project = _table(data, "project")
    poetry = _table(_table(data, "tool"), "poetry")

    version = project.get("requires-python")
    deps: Dict[str, Optional[str]] = {}
    dependencies = project.get("dependencies")
    for spec in dependencies if isinstance(dependencies, list) else []:
        name, constraint = _requirement_name(str(spec))
        deps[name] = constraint
    poetry_deps = poetry.get("dependencies") or {}
    if isinstance(poetry_deps, dict):
        version = version or poetry_deps.get("python")
        deps.update({
            str(k).lower(): v if isinstance(v, str) else None
            for k, v in poetry_deps.items()
            if k != "python"
        })

    return [
        Match("python", LANGUAGE, _clean_version(version), 0.8, source, rank),
        *_frameworks(deps, PYTHON_FRAMEWORKS, "python", source),
    ]


def parse_requirements(path: Path, source: str, rank: int) -> List[Match]:
    deps = {}
    for line in _read_text(path).splitlines():
        line = line.strip()
        if line and not line.startswith(("#", "-")):
            name, constraint = _requirement_name(line)
            deps[name] = constraint
    return [
        Match("python", LANGUAGE, None, 0.7, source, rank),
        *_frameworks(deps, PYTHON_FRAMEWORKS, "python", source),
    ]


def parse_pipfile(path: Path, source: str, rank: int) -> List[Match]:
    data = _read_toml(path)
    requires = _table(data, "requires")
    version = requires.get("python_full_version") or requires.get("python_version")
    packages = {str(k).lower(): None for k in _table(data, "packages")}
    return [
        Match("python", LANGUAGE, _clean_version(version), 0.7, source, rank),
        *_frameworks(packages, PYTHON_FRAMEWORKS, "python", source),
    ]


def parse_cargo(path: Path, source: str, rank: int) -> List[Match]:
    data = _read_toml(path)
    rust_version = _table(data, "package").get("rust-version")
    deps = {str(k): None for k in _table(data, "dependencies")}
    return [
        Match("rust", LANGUAGE, f">={rust_version}" if rust_version else None, 0.8, source, rank),
        *_frameworks(deps, RUST_FRAMEWORKS, "rust", source),
    ]


def parse_go_mod(path: Path, source: str, rank: int) -> List[Match]:
    version = None
    deps = {}
    for line in _read_text(path).splitlines():
        parts = line.strip().split()
        if len(parts) >= 2 and parts[0] == "go":
            version = parts[1]
        elif parts and not parts[0].startswith("//"):
            module = parts[1] if parts[0] == "require" and len(parts) > 1 else parts[0]
            deps[re.sub(r"/v\d+$", "", module)] = None
    return [
        Match("go", LANGUAGE, _clean_version(version), 0.8, source, rank),
        *_frameworks(deps, GO_FRAMEWORKS, "go", source),
    ]


def presence(name: str, kind: DetectionKind, confidence: float, extra: Iterable[Tuple[str, DetectionKind]] = ()) -> Parser:
    """Parser for signatures whose mere existence is the signal."""

    def parse(path: Path, source: str, rank: int) -> List[Match]:
        matches = [Match(name, kind, None, confidence, source, rank)]
        for other, other_kind in extra:
            matches.append(Match(other, other_kind, None, confidence, source, rank))
        return matches

    return parse


def manage_py(path: Path, source: str, rank: int) -> List[Match]:
    return [
        Match("python", LANGUAGE, None, 0.9, source, rank),
        Match("django", FRAMEWORK, None, 0.9, source, rank, "python"),
    ]


def version_file(name: str) -> Parser:
    """Parser for single-value version files such as .nvmrc."""

    def parse(path: Path, source: str, rank: int) -> List[Match]:
        lines = [ln.strip() for ln in _read_text(path).splitlines() if ln.strip() and not ln.strip().startswith("#")]
        version = _clean_version(lines[0]) if lines else None
        if version and name == "python" and version.startswith("python-"):
            version = version[len("python-"):]
        return [Match(name, LANGUAGE, version, 0.95, source, rank)]

    return parse


def parse_rust_toolchain_toml(path: Path, source: str, rank: int) -> List[Match]:
    channel = _table(_read_toml(path), "toolchain").get("channel")
    return [Match("rust", LANGUAGE, _clean_version(channel), 0.95, source, rank)]


def parse_tool_versions(path: Path, source: str, rank: int) -> List[Match]:
    matches = []
    for line in _read_text(path).splitlines():
        parts = line.split("#")[0].split()
        if len(parts) >= 2 and parts[0] in ASDF_NAMES:
            name, kind = ASDF_NAMES[parts[0]]
            matches.append(Match(name, kind, _clean_version(parts[1]), 0.95, source, rank))
    return matches


def _github_steps(workflow: Dict[str, Any]) -> Iterable[Dict[str, Any]]:
    for job in _table(workflow, "jobs").values():
        if isinstance(job, dict):
            steps = job.get("steps")
            for step in steps if isinstance(steps, list) else []:
                if isinstance(step, dict):
                    yield step


def parse_github_workflow(path: Path, source: str, rank: int) -> List[Match]:
    try:
        workflow = yaml.safe_load(_read_text(path))
    except yaml.YAMLError as e:
        logger.warning("ci_descriptor_unreadable", path=str(path), error=str(e))
        return []
    if not isinstance(workflow, dict):
        return []

    matches = []
    for step in _github_steps(workflow):
        action = str(step.get("uses") or "").split("@")[0]
        if action in SETUP_ACTIONS:
            name, input_key = SETUP_ACTIONS[action]
            version = _table(step, "with").get(input_key)
            # matrix expressions are not concrete versions
            if isinstance(version, str) and "${{" in version:
                version = None
            kind = TOOL if name in ("bun", "pnpm") else LANGUAGE
            matches.append(Match(name, kind, _clean_version(version), 0.6, source, rank))
    return matches


def parse_gitlab_ci(path: Path, source: str, rank: int) -> List[Match]:
    try:
        config = yaml.safe_load(_read_text(path))
    except yaml.YAMLError as e:
        logger.warning("ci_descriptor_unreadable", path=str(path), error=str(e))
        return []
    if not isinstance(config, dict):
        return []

    images = []
    for value in [config, *config.values()]:
        if isinstance(value, dict):
            image = value.get("image")
            if isinstance(image, dict):
                image = image.get("name")
            if isinstance(image, str):
                images.append(image)

    matches = []
    for image in images:
        repo, _, tag = image.rpartition("/")[2].partition(":")
        if repo in CI_IMAGES:
            version = re.match(r"[\d.]+", tag) if tag else None
            matches.append(
                Match(CI_IMAGES[repo], LANGUAGE, version.group(0).rstrip(".") if version else None, 0.6, source, rank)
            )
    return matches


def parse_declaration(path: Path, source: str, rank: int) -> List[Match]:
    config = load_project_config(path.parent)
    if config is None:
        return []
    return [
        *(Match(n, LANGUAGE, _clean_version(v), 1.0, source, rank) for n, v in config.languages.items()),
        *(Match(n, TOOL, _clean_version(v), 1.0, source, rank) for n, v in config.tools.items()),
    ]


# Fixed signature table. Order breaks ties between matches of equal rank.
SIGNATURES: List[Tuple[str, int, Parser]] = [
    (".github/workflows/*.yml", RANK_CI, parse_github_workflow),
    (".github/workflows/*.yaml", RANK_CI, parse_github_workflow),
    (".gitlab-ci.yml", RANK_CI, parse_gitlab_ci),
    ("package.json", RANK_MANIFEST, parse_package_json),
    ("pyproject.toml", RANK_MANIFEST, parse_pyproject),
    ("requirements.txt", RANK_MANIFEST, parse_requirements),
    ("setup.py", RANK_MANIFEST, presence("python", LANGUAGE, 0.7)),
    ("Pipfile", RANK_MANIFEST, parse_pipfile),
    ("Cargo.toml", RANK_MANIFEST, parse_cargo),
    ("go.mod", RANK_MANIFEST, parse_go_mod),
    ("package-lock.json", RANK_LOCKFILE, presence("node", LANGUAGE, 0.9)),
    ("pnpm-lock.yaml", RANK_LOCKFILE, presence("node", LANGUAGE, 0.9, [("pnpm", TOOL)])),
    ("yarn.lock", RANK_LOCKFILE, presence("node", LANGUAGE, 0.9, [("yarn", TOOL)])),
    ("bun.lockb", RANK_LOCKFILE, presence("node", LANGUAGE, 0.9, [("bun", TOOL)])),
    ("bun.lock", RANK_LOCKFILE, presence("node", LANGUAGE, 0.9, [("bun", TOOL)])),
    ("uv.lock", RANK_LOCKFILE, presence("python", LANGUAGE, 0.9)),
    ("poetry.lock", RANK_LOCKFILE, presence("python", LANGUAGE, 0.9)),
    ("Pipfile.lock", RANK_LOCKFILE, presence("python", LANGUAGE, 0.9)),
    ("Cargo.lock", RANK_LOCKFILE, presence("rust", LANGUAGE, 0.9)),
    ("go.sum", RANK_LOCKFILE, presence("go", LANGUAGE, 0.9)),
    ("manage.py", RANK_FRAMEWORK, manage_py),
    (".nvmrc", RANK_VERSION_FILE, version_file("node")),
    (".node-version", RANK_VERSION_FILE, version_file("node")),
    (".python-version", RANK_VERSION_FILE, version_file("python")),
    ("runtime.txt", RANK_VERSION_FILE, version_file("python")),
    ("rust-toolchain", RANK_VERSION_FILE, version_file("rust")),
    ("rust-toolchain.toml", RANK_VERSION_FILE, parse_rust_toolchain_toml),
    (".tool-versions", RANK_VERSION_FILE, parse_tool_versions),
    (PROJECT_CONFIG_FILE, RANK_DECLARATION, parse_declaration),
]


def scan(root: Path) -> List[Match]:
    """Every signature match in ``root``, in signature table order."""
    matches: List[Match] = []
    for pattern, rank, parser in SIGNATURES:
        for path in sorted(root.glob(pattern)):
            if not path.is_file() or any(part in SKIP_DIRS for part in path.relative_to(root).parts):
                continue
            source = path.relative_to(root).as_posix()
            found = parser(path, source, rank)
            if found:
                logger.debug("signature_matched", source=source, names=[m.name for m in found])
            matches.extend(found)
    return matches


def resolve(name: str, matches: List[Match]) -> Detection:
    """Collapse the matches for one name into a Detection.

    Raises:
        DetectionAmbiguous: If the rank deciding the version holds
            conflicting versions.
    """
    best = max(matches, key=lambda m: m.rank)
    best = next(m for m in matches if m.rank == best.rank)

    versioned = [m for m in matches if m.version is not None]
    version = None
    if versioned:
        top = max(m.rank for m in versioned)
        deciding = [m for m in versioned if m.rank == top]
        if len({m.version for m in deciding}) > 1:
            raise DetectionAmbiguous(name, {m.source: m.version for m in deciding})
        version = deciding[0].version

    language = next((m.language for m in matches if m.language), None)
    return Detection(
        name=name,
        kind=best.kind,
        version=version,
        confidence=best.confidence,
        source=best.source,
        language=language,
    )


def _project_scripts(root: Path) -> Tuple[Tuple[str, str], ...]:
    scripts: Dict[str, str] = {}
    package_json = root / "package.json"
    if package_json.is_file():
        try:
            data = json.loads(_read_text(package_json))
        except json.JSONDecodeError:
            data = {}
        if isinstance(data, dict) and isinstance(data.get("scripts"), dict):
            scripts.update({str(k): str(v) for k, v in data["scripts"].items()})
    config = load_project_config(root)
    if config:
        scripts.update(config.scripts)
    return tuple(sorted(scripts.items()))


def detect(root: Path, threshold: float = DEFAULT_THRESHOLD) -> ProjectProfile:
    """Build the ProjectProfile for ``root``.

    Read-only and repeatable: the same directory contents always give an
    equal profile. Nothing above ``threshold`` gives an empty profile.

    Raises:
        ConfigurationError: If ``root`` is not a directory or its .devenv.yaml is invalid.
        DetectionAmbiguous: On same-rank version conflicts.
    """
    root = Path(root)
    if not root.is_dir():
        raise ConfigurationError(f"Project path {root} is not a directory", details={"path": str(root)})

    grouped: Dict[Tuple[DetectionKind, str], List[Match]] = {}
    for match in scan(root):
        if match.confidence >= threshold:
            grouped.setdefault((match.kind, match.name), []).append(match)

    detections = [resolve(name, matches) for (_, name), matches in grouped.items()]

    def of_kind(kind: DetectionKind) -> Tuple[Detection, ...]:
        return tuple(sorted((d for d in detections if d.kind == kind), key=lambda d: d.name))

    profile = ProjectProfile(
        root=root,
        languages=of_kind(LANGUAGE),
        frameworks=of_kind(FRAMEWORK),
        tools=of_kind(TOOL),
        scripts=_project_scripts(root),
    )
    logger.info(
        "project_detected",
        root=str(root),
        languages=profile.language_versions,
        tools=profile.tool_versions,
        frameworks=[d.name for d in profile.frameworks],
    )
    return profile
