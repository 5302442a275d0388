"""Parametric component generators keyed by scene component type."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from ..geometry import GeometryPrimitive, Vec3, round_half_up
from ..seed import SeededRandom


@dataclass
class ComponentContext:
    node_id: str
    position: Vec3
    params: dict[str, Any]
    rng: SeededRandom
    theme: str = "default"
    scale: float = 1.0
    materials: dict[str, str] = field(default_factory=dict)
    _counter: int = field(default=0, repr=False)

    def next_id(self, kind: str) -> str:
        ident = f"{self.node_id}:{kind}_{self._counter}"
        self._counter += 1
        return ident

    def param(self, name: str, default: Any = None) -> Any:
        return self.params.get(name, default)

    def size(self, name: str, default: float, minimum: int = 1) -> int:
        value = float(self.params.get(name, default))
        return max(minimum, round_half_up(value * self.scale))

    def flag(self, name: str, default: bool) -> bool:
        return bool(self.params.get(name, default))

    def material(self, name: str, default: str) -> str:
        return str(self.materials.get(name) or self.params.get(name) or default)


ComponentFn = Callable[[ComponentContext], list[GeometryPrimitive]]

from .organic import cylinder, sphere  # noqa: E402
from .primitives import box, wall  # noqa: E402
from .roofs import roof_dome, roof_gable  # noqa: E402
from .rooms import room  # noqa: E402
from .structural import arch, column, platform, staircase  # noqa: E402

COMPONENTS: dict[str, ComponentFn] = {
    "box": box,
    "wall": wall,
    "column": column,
    "platform": platform,
    "staircase": staircase,
    "arch": arch,
    "room": room,
    "roof_gable": roof_gable,
    "roof_dome": roof_dome,
    "sphere": sphere,
    "cylinder": cylinder,
}

FALLBACK_COMPONENT = "box"


def get_component(kind: str) -> Optional[ComponentFn]:
    return COMPONENTS.get(kind)


def list_components() -> list[str]:
    return sorted(COMPONENTS)
