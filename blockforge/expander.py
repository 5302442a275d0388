from __future__ import annotations

import logging
from dataclasses import replace
from typing import Optional

from .components import ComponentContext, get_component
from .geometry import ORIGIN, GeometryPrimitive, Vec3
from .scene import ComponentNode
from .seed import SeededRandom

LOG = logging.getLogger("blockforge.expander")


def expand(
    node: ComponentNode,
    rng: SeededRandom,
    theme: str,
    origin: Vec3 = ORIGIN,
    warnings: Optional[list[str]] = None,
) -> list[GeometryPrimitive]:
    """Run one node's generator at ``origin`` + its local position; children are not visited."""
    generator = get_component(node.type)
    if generator is None:
        message = f"unknown component type {node.type!r} on node {node.id}"
        LOG.warning("Skipping %s", message)
        if warnings is not None:
            warnings.append(message)
        return []

    ctx = ComponentContext(
        node_id=node.id,
        position=origin + node.transform.position.to_vec(),
        params=dict(node.params),
        rng=rng,
        theme=theme,
        scale=node.transform.scale,
        materials=dict(node.materials),
    )
    try:
        prims = generator(ctx)
    except (TypeError, ValueError) as exc:
        message = f"component {node.id} ({node.type}) failed to expand: {exc}"
        LOG.warning("Skipping %s", message)
        if warnings is not None:
            warnings.append(message)
        return []
    return [replace(prim, source=node.id) for prim in prims]


def expand_tree(
    root: ComponentNode,
    rng: SeededRandom,
    theme: str,
    origin: Vec3 = ORIGIN,
    warnings: Optional[list[str]] = None,
) -> list[GeometryPrimitive]:
    """Pre-order expansion of ``root`` and its descendants.

    Each stack entry carries the accumulated translation of its ancestors, so
    children are offset by the sum of parent positions and nothing else.
    """
    prims: list[GeometryPrimitive] = []
    stack: list[tuple[ComponentNode, Vec3]] = [(root, origin)]
    while stack:
        node, parent_origin = stack.pop()
        prims.extend(expand(node, rng, theme, parent_origin, warnings))
        node_origin = parent_origin + node.transform.position.to_vec()
        for child in reversed(node.children):
            stack.append((child, node_origin))
    return prims
