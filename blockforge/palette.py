"""Theme palettes and block validity tables.

Symbolic tokens (``$primary``, ``$roof``...) resolve against a theme palette.
Literal block names are checked against the server version and replaced by a
known substitute when the server is too old for them.
"""

from __future__ import annotations

import logging
import re
from typing import Optional

from .geometry import base_block

LOG = logging.getLogger("blockforge.palette")

DEFAULT_BLOCK = "stone"
DEFAULT_THEME = "default"

THEME_PALETTES: dict[str, dict[str, str]] = {
    "default": {
        "primary": "stone_bricks",
        "secondary": "oak_planks",
        "accent": "cracked_stone_bricks",
        "trim": "cobblestone",
        "wood_primary": "oak_planks",
        "wood_log": "oak_log",
        "roof": "oak_stairs",
        "roof_slab": "oak_slab",
        "floor": "oak_planks",
        "glass": "glass_pane",
        "light": "torch",
        "metal": "iron_bars",
        "door": "oak_door",
        "fence": "oak_fence",
    },
    "medieval": {
        "primary": "stone_bricks",
        "secondary": "cobblestone",
        "accent": "mossy_stone_bricks",
        "trim": "cracked_stone_bricks",
        "wood_primary": "oak_planks",
        "wood_log": "oak_log",
        "roof": "spruce_stairs",
        "roof_slab": "spruce_slab",
        "floor": "oak_planks",
        "glass": "glass_pane",
        "light": "lantern",
        "metal": "iron_bars",
        "door": "oak_door",
        "fence": "oak_fence",
    },
    "modern": {
        "primary": "white_concrete",
        "secondary": "gray_concrete",
        "accent": "black_concrete",
        "trim": "light_gray_concrete",
        "wood_primary": "stripped_oak_log",
        "wood_log": "stripped_birch_log",
        "roof": "smooth_quartz_slab",
        "roof_slab": "smooth_quartz_slab",
        "floor": "polished_diorite",
        "glass": "glass",
        "light": "sea_lantern",
        "metal": "iron_block",
        "door": "iron_door",
        "fence": "iron_bars",
    },
    "gothic": {
        "primary": "deepslate_bricks",
        "secondary": "polished_deepslate",
        "accent": "chiseled_deepslate",
        "trim": "deepslate_tiles",
        "wood_primary": "dark_oak_planks",
        "wood_log": "dark_oak_log",
        "roof": "dark_oak_stairs",
        "roof_slab": "dark_oak_slab",
        "floor": "polished_blackstone_bricks",
        "glass": "gray_stained_glass_pane",
        "light": "soul_lantern",
        "metal": "chain",
        "door": "dark_oak_door",
        "fence": "nether_brick_fence",
    },
    "rustic": {
        "primary": "oak_planks",
        "secondary": "spruce_planks",
        "accent": "stripped_oak_log",
        "trim": "oak_log",
        "wood_primary": "oak_planks",
        "wood_log": "oak_log",
        "roof": "spruce_stairs",
        "roof_slab": "spruce_slab",
        "floor": "spruce_planks",
        "glass": "glass_pane",
        "light": "torch",
        "metal": "iron_bars",
        "door": "oak_door",
        "fence": "oak_fence",
    },
    "fantasy": {
        "primary": "purpur_block",
        "secondary": "end_stone_bricks",
        "accent": "amethyst_block",
        "trim": "crying_obsidian",
        "wood_primary": "crimson_planks",
        "wood_log": "crimson_stem",
        "roof": "purpur_stairs",
        "roof_slab": "purpur_slab",
        "floor": "polished_blackstone",
        "glass": "magenta_stained_glass_pane",
        "light": "end_rod",
        "metal": "amethyst_block",
        "door": "crimson_door",
        "fence": "crimson_fence",
    },
}

SUBSTITUTIONS: dict[str, tuple[str, ...]] = {
    "polished_blackstone_bricks": ("stone_bricks", "cobblestone"),
    "polished_blackstone": ("polished_andesite", "stone"),
    "deepslate_bricks": ("stone_bricks", "cobblestone"),
    "deepslate_tiles": ("stone_brick_slab", "cobblestone"),
    "polished_deepslate": ("polished_andesite", "stone"),
    "chiseled_deepslate": ("chiseled_stone_bricks", "stone_bricks"),
    "calcite": ("quartz_block", "white_concrete"),
    "tuff": ("andesite", "stone"),
    "copper_block": ("orange_terracotta",),
    "amethyst_block": ("purpur_block", "magenta_concrete"),
    "moss_block": ("green_concrete", "lime_wool"),
    "rooted_dirt": ("dirt", "coarse_dirt"),
    "crying_obsidian": ("obsidian", "purple_concrete"),
    "crimson_planks": ("dark_oak_planks", "nether_bricks"),
    "crimson_stem": ("dark_oak_log", "nether_bricks"),
    "crimson_door": ("dark_oak_door", "oak_door"),
    "crimson_fence": ("dark_oak_fence", "oak_fence"),
    "chain": ("iron_bars",),
    "lantern": ("torch", "glowstone"),
    "soul_lantern": ("torch", "glowstone"),
    "cherry_planks": ("birch_planks", "oak_planks"),
    "cherry_log": ("birch_log", "oak_log"),
    "mangrove_planks": ("jungle_planks", "oak_planks"),
    "tuff_bricks": ("stone_bricks", "cobblestone"),
}

_WOODS = ("oak", "spruce", "birch", "jungle", "acacia", "dark_oak", "mangrove", "cherry")
_NETHER_WOODS = ("crimson", "warped")
_COLORS = (
    "white", "orange", "magenta", "light_blue", "yellow", "lime", "pink", "gray",
    "light_gray", "cyan", "purple", "blue", "brown", "green", "red", "black",
)
_STONE_BLOCKS = (
    "air", "stone", "smooth_stone", "smooth_stone_slab", "cobblestone", "mossy_cobblestone",
    "stone_bricks", "mossy_stone_bricks", "cracked_stone_bricks", "chiseled_stone_bricks",
    "stone_brick_stairs", "stone_brick_slab", "stone_brick_wall", "cobblestone_stairs",
    "cobblestone_slab", "cobblestone_wall", "andesite", "polished_andesite", "diorite",
    "polished_diorite", "granite", "polished_granite", "bricks", "brick_stairs", "brick_slab",
    "sandstone", "smooth_sandstone", "cut_sandstone", "sandstone_stairs", "quartz_block",
    "smooth_quartz", "smooth_quartz_slab", "quartz_pillar", "purpur_block", "purpur_pillar",
    "purpur_stairs", "purpur_slab", "end_stone", "end_stone_bricks", "obsidian",
    "nether_bricks", "nether_brick_fence", "prismarine", "dark_prismarine", "glowstone",
    "sea_lantern", "torch", "end_rod", "redstone_lamp", "jack_o_lantern", "glass", "glass_pane",
    "iron_bars", "iron_block", "iron_door", "gold_block", "grass_block", "dirt", "coarse_dirt",
    "podzol", "gravel", "sand", "water", "ladder", "bookshelf", "crafting_table", "chest",
)
_MODERN_BLOCKS = (
    "deepslate", "cobbled_deepslate", "polished_deepslate", "deepslate_bricks",
    "deepslate_tiles", "chiseled_deepslate", "calcite", "tuff", "amethyst_block",
    "copper_block", "moss_block", "rooted_dirt", "tinted_glass", "tuff_bricks",
    "polished_blackstone", "polished_blackstone_bricks", "blackstone", "crying_obsidian",
    "soul_lantern", "lantern", "chain",
)

# Earliest server version shipping a block, matched by name prefix.
_INTRODUCED: tuple[tuple[str, tuple[int, ...]], ...] = (
    ("tuff_bricks", (1, 21)),
    ("cherry_", (1, 20)),
    ("stripped_cherry_", (1, 20)),
    ("mangrove_", (1, 19)),
    ("stripped_mangrove_", (1, 19)),
    ("deepslate", (1, 17)),
    ("cobbled_deepslate", (1, 17)),
    ("polished_deepslate", (1, 17)),
    ("chiseled_deepslate", (1, 17)),
    ("calcite", (1, 17)),
    ("tuff", (1, 17)),
    ("amethyst_block", (1, 17)),
    ("copper_block", (1, 17)),
    ("moss_block", (1, 17)),
    ("rooted_dirt", (1, 17)),
    ("tinted_glass", (1, 17)),
    ("blackstone", (1, 16)),
    ("polished_blackstone", (1, 16)),
    ("crimson_", (1, 16)),
    ("warped_", (1, 16)),
    ("stripped_crimson_", (1, 16)),
    ("stripped_warped_", (1, 16)),
    ("crying_obsidian", (1, 16)),
    ("soul_lantern", (1, 16)),
    ("chain", (1, 16)),
    ("lantern", (1, 14)),
)

_VERSION_RE = re.compile(r"^(\d+)(?:\.(\d+))?(?:\.(\d+))?")


def _build_known_blocks() -> frozenset[str]:
    names: set[str] = set(_STONE_BLOCKS) | set(_MODERN_BLOCKS)
    for wood in _WOODS:
        for suffix in ("planks", "log", "stairs", "slab", "fence", "fence_gate", "door", "trapdoor", "leaves"):
            names.add(f"{wood}_{suffix}")
        names.add(f"stripped_{wood}_log")
    for wood in _NETHER_WOODS:
        for suffix in ("planks", "stem", "stairs", "slab", "fence", "fence_gate", "door", "trapdoor"):
            names.add(f"{wood}_{suffix}")
        names.add(f"stripped_{wood}_stem")
    for color in _COLORS:
        for suffix in ("concrete", "wool", "terracotta", "stained_glass", "stained_glass_pane", "carpet"):
            names.add(f"{color}_{suffix}")
    return frozenset(names)


KNOWN_BLOCKS = _build_known_blocks()


def parse_version(version: str) -> tuple[int, ...]:
    match = _VERSION_RE.match(version.strip())
    if not match:
        return (1, 21)
    return tuple(int(part) for part in match.groups() if part is not None)


def _introduced_in(name: str) -> Optional[tuple[int, ...]]:
    for prefix, version in _INTRODUCED:
        if name.startswith(prefix):
            return version
    return None


def is_valid_block(block: str, server_version: str) -> bool:
    name = base_block(block)
    if name not in KNOWN_BLOCKS:
        return False
    introduced = _introduced_in(name)
    return introduced is None or parse_version(server_version) >= introduced


def substitute(block: str, server_version: str) -> Optional[str]:
    for candidate in SUBSTITUTIONS.get(base_block(block), ()):
        if is_valid_block(candidate, server_version):
            return candidate
    return None


def theme_palette(theme: str) -> dict[str, str]:
    return dict(THEME_PALETTES.get(theme, THEME_PALETTES[DEFAULT_THEME]))


def resolve_block(token: str, theme: str, server_version: str) -> Optional[str]:
    """Theme-level resolver: literal, then theme entry, then substitution. ``None`` if nothing fits."""
    seen: set[str] = set()
    palette = theme_palette(theme)
    current = token
    while current not in seen:
        seen.add(current)
        if is_valid_block(current, server_version):
            return current
        key = current[1:] if current.startswith("$") else current
        if key in palette:
            current = palette[key]
            continue
        replacement = substitute(current, server_version)
        if replacement is not None:
            LOG.warning("Substituted %s -> %s for server %s", current, replacement, server_version)
            return replacement
        return None
    return None


def resolve_palette(
    theme: str,
    overrides: Optional[dict[str, str]],
    server_version: str,
    warnings: list[str],
) -> dict[str, str]:
    """Merge scene overrides onto the theme palette, validating every entry."""
    merged = theme_palette(theme)
    if theme not in THEME_PALETTES:
        warnings.append(f"unknown theme {theme!r}, using {DEFAULT_THEME!r}")
    merged.update(overrides or {})
    resolved: dict[str, str] = {}
    for key in sorted(merged):
        block = resolve_block(merged[key], theme, server_version)
        if block is None:
            warnings.append(f"palette entry {key}={merged[key]!r} is not a valid block, using {DEFAULT_BLOCK}")
            block = DEFAULT_BLOCK
        resolved[key] = block
    return resolved
