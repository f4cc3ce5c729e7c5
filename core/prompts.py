import logging
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from .profiles import Mode, UserProfile

log = logging.getLogger(__name__)

DEFAULT_PROMPTS_PATH = Path(__file__).with_name("prompts.yaml")
SECTIONS = ("persona", "onboarding", "operational")


class PromptConfig:
    """YAML system prompts with an optional per-deployment override, reloaded on change."""

    def __init__(
        self,
        *,
        default_path: Path = DEFAULT_PROMPTS_PATH,
        override_path: Optional[Path] = None,
        token_symbol: str = "MXNB",
    ) -> None:
        self.default_path = default_path
        self.override_path = override_path
        self.token_symbol = token_symbol
        self._sections: Dict[str, List[str]] = {}
        self._mtimes: Dict[Path, Optional[float]] = {}
        self._load()

    @staticmethod
    def _read_config(path: Optional[Path]) -> Dict[str, List[str]]:
        if path is None or not path.exists():
            return {}
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            log.warning("failed to read prompt config %s: %s", path, exc)
            return {}
        sections: Dict[str, List[str]] = {}
        if not isinstance(raw, dict):
            return sections
        for key, value in raw.items():
            slug = str(key).strip().lower()
            if isinstance(value, (list, tuple)):
                lines = [" ".join(str(item).split()) for item in value if str(item or "").strip()]
            elif isinstance(value, str):
                lines = [" ".join(value.split())]
            else:
                lines = []
            if lines:
                sections[slug] = lines
        return sections

    def _paths(self) -> List[Path]:
        return [path for path in (self.default_path, self.override_path) if path is not None]

    @staticmethod
    def _mtime(path: Path) -> Optional[float]:
        try:
            return path.stat().st_mtime if path.exists() else None
        except OSError:
            return None

    def _load(self) -> None:
        merged = self._read_config(self.default_path)
        for key, lines in self._read_config(self.override_path).items():
            merged[key] = lines
        missing = [key for key in SECTIONS if key not in merged]
        if missing:
            log.warning("prompt config lacks sections: %s", ", ".join(missing))
        self._sections = merged
        self._mtimes = {path: self._mtime(path) for path in self._paths()}

    def _refresh(self) -> None:
        if any(self._mtime(path) != seen for path, seen in self._mtimes.items()):
            self._load()

    def section(self, name: str) -> str:
        self._refresh()
        return " ".join(self._sections.get(name, []))

    def system_prompt(self, mode: Mode, profile: UserProfile) -> str:
        parts = [self.section("persona"), self.section(mode.value)]
        parts.append(self._profile_context(mode, profile))
        return "\n\n".join(part for part in parts if part)

    def _profile_context(self, mode: Mode, profile: UserProfile) -> str:
        def shown(value: str) -> str:
            return value.strip() or "(not provided yet)"

        lines = [
            "Known user details:",
            f"- preferred name: {shown(profile.display_name)}",
            f"- email: {shown(profile.email)}",
        ]
        if mode is Mode.OPERATIONAL:
            address = profile.wallet.address if profile.wallet else ""
            lines.append(f"- {self.token_symbol} wallet address: {shown(address)}")
        return "\n".join(lines)
