"""World targets the executor drives.

``ConsoleTarget`` talks to a dockerised Minecraft server through ``rcon-cli``
and the vanilla ``fill``/``setblock``/``execute if block`` commands.
``SimulatedWorld`` keeps blocks in memory for dry runs.
"""

from __future__ import annotations

import logging
import math
import re
from typing import TYPE_CHECKING, Iterable, Optional, Protocol

import docker
from docker.errors import DockerException, NotFound

from .geometry import Cell, Vec3, base_block
from .placement import BulkCommand, BulkRegionOp

if TYPE_CHECKING:
    from .config import BuilderSettings

LOG = logging.getLogger("blockforge.targets")

_POS_RE = re.compile(r"\[(-?[\d.]+)d,\s*(-?[\d.]+)d,\s*(-?[\d.]+)d\]")
_FILL_OK = ("Successfully filled", "No blocks were filled")
_SET_OK = ("Changed the block", "Could not set the block")
_UNLOADED = ("not loaded", "outside of the world")


class TargetError(RuntimeError):
    """Raised when the target rejects a mutation or cannot be reached."""


class WorldTarget(Protocol):
    uses_text_commands: bool

    def check_block(self, pos: Vec3, block: str) -> Optional[bool]:
        """``True``/``False`` for a match, ``None`` when the cell cannot be read (unloaded)."""

    def set_block(self, pos: Vec3, block: str) -> None:
        ...

    def run_bulk(self, op: BulkRegionOp) -> bool:
        """Apply a world-space bulk op; ``False`` when the target has no such command."""

    def agent_position(self) -> Optional[Vec3]:
        ...

    def move_agent(self, pos: Vec3) -> None:
        ...

    def is_creative(self) -> bool:
        ...


def qualified(block: str) -> str:
    return block if ":" in block.split("[", 1)[0] else f"minecraft:{block}"


def _safe_decode(data: object) -> str:
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return str(data)


def get_docker_client() -> docker.DockerClient:
    try:
        return docker.from_env()
    except DockerException as exc:
        raise TargetError(f"Docker client unavailable: {exc}") from exc


def get_container(client: docker.DockerClient, name: str):
    try:
        container = client.containers.get(name)
        container.reload()
    except NotFound as exc:
        raise TargetError(f"Container {name!r} is missing; start the server stack first.") from exc
    except DockerException as exc:
        raise TargetError(f"Failed to inspect Docker container: {exc}") from exc
    if container.status != "running":
        raise TargetError(f"Container {name!r} is {container.status}, not running")
    return container


class ConsoleTarget:
    uses_text_commands = True

    def __init__(self, container, *, agent_name: str = "", creative: bool = False, dimension: str = "minecraft:overworld") -> None:
        self.container = container
        self.agent_name = agent_name
        self.creative = creative
        self.dimension = dimension

    @classmethod
    def from_settings(cls, settings: "BuilderSettings") -> "ConsoleTarget":
        container = get_container(get_docker_client(), settings.container_name)
        return cls(container, agent_name=settings.agent_name, creative=settings.assume_creative)

    def run(self, command: str) -> str:
        LOG.debug("rcon> %s", command)
        try:
            result = self.container.exec_run(["rcon-cli", command])
        except DockerException as exc:
            raise TargetError(f"rcon-cli failed for {command!r}: {exc}") from exc
        output = _safe_decode(result.output).strip()
        if result.exit_code != 0:
            raise TargetError(output or f"rcon-cli exited with code {result.exit_code}")
        return output

    def check_block(self, pos: Vec3, block: str) -> Optional[bool]:
        output = self.run(f"execute in {self.dimension} if block {pos.x} {pos.y} {pos.z} {qualified(base_block(block))}")
        if any(marker in output for marker in _UNLOADED):
            return None
        return "Test passed" in output

    def set_block(self, pos: Vec3, block: str) -> None:
        output = self.run(f"execute in {self.dimension} run setblock {pos.x} {pos.y} {pos.z} {qualified(block)} replace")
        if any(marker in output for marker in _UNLOADED):
            LOG.debug("setblock at %s hit an unloaded chunk", pos)
            return
        if not any(marker in output for marker in _SET_OK):
            raise TargetError(output or "setblock returned no output")

    def run_bulk(self, op: BulkRegionOp) -> bool:
        if op.command is BulkCommand.FILL:
            mode = "replace"
        elif op.command is BulkCommand.WALLS:
            mode = "outline"
        elif op.command in (BulkCommand.SPHERE, BulkCommand.CYLINDER):
            return False
        else:
            raise TypeError(f"unsupported bulk command: {op.command!r}")
        lo, hi = op.start, op.end
        output = self.run(
            f"execute in {self.dimension} run fill {lo.x} {lo.y} {lo.z} {hi.x} {hi.y} {hi.z} {qualified(op.block)} {mode}"
        )
        if not any(marker in output for marker in _FILL_OK):
            raise TargetError(output or "fill returned no output")
        return True

    def agent_position(self) -> Optional[Vec3]:
        if not self.agent_name:
            return None
        try:
            output = self.run(f"data get entity {self.agent_name} Pos")
        except TargetError as exc:
            LOG.warning("Cannot read position of %s: %s", self.agent_name, exc)
            return None
        match = _POS_RE.search(output)
        if not match:
            return None
        x, y, z = (math.floor(float(part)) for part in match.groups())
        return Vec3(x, y, z)

    def move_agent(self, pos: Vec3) -> None:
        if not self.agent_name:
            return
        self.run(f"execute in {self.dimension} run tp {self.agent_name} {pos.x + 0.5} {pos.y} {pos.z + 0.5}")

    def is_creative(self) -> bool:
        return self.creative


class SimulatedWorld:
    """In-memory target; block names are stored as given, comparisons ignore state properties."""

    uses_text_commands = False

    def __init__(
        self,
        *,
        creative: bool = False,
        agent: Optional[Vec3] = None,
        unloaded: Iterable[Cell] = (),
        bulk_commands: Iterable[BulkCommand] = tuple(BulkCommand),
    ) -> None:
        self.blocks: dict[Cell, str] = {}
        self.creative = creative
        self.agent = agent
        self.unloaded = set(unloaded)
        self.bulk_commands = frozenset(bulk_commands)
        self.set_calls = 0
        self.bulk_calls = 0
        self.moves: list[Vec3] = []

    def block_name(self, cell: Cell) -> str:
        return self.blocks.get(cell, "air")

    def check_block(self, pos: Vec3, block: str) -> Optional[bool]:
        cell = pos.as_tuple()
        if cell in self.unloaded:
            return None
        return base_block(self.block_name(cell)) == base_block(block)

    def set_block(self, pos: Vec3, block: str) -> None:
        self.set_calls += 1
        self.blocks[pos.as_tuple()] = block

    def run_bulk(self, op: BulkRegionOp) -> bool:
        if op.command not in self.bulk_commands:
            return False
        self.bulk_calls += 1
        for cell, block in op.cells():
            self.blocks[cell] = block
        return True

    def agent_position(self) -> Optional[Vec3]:
        return self.agent

    def move_agent(self, pos: Vec3) -> None:
        self.moves.append(pos)
        self.agent = pos

    def is_creative(self) -> bool:
        return self.creative
