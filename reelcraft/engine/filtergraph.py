"""
Small typed model of an ffmpeg filter graph.

Chains are built from `Filter` nodes and labelled pads and only turned into
ffmpeg's `-filter_complex` text by `FilterGraph.render()`.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Tuple

_BARE_VALUE = re.compile(r"^[A-Za-z0-9_.+\-/#@]*$")
_STREAM_SPEC = re.compile(r"^\d+:[vas](:\d+)?$")


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, float):
        text = f"{value:.3f}".rstrip("0").rstrip(".")
        return text or "0"
    text = str(value)
    if _BARE_VALUE.match(text):
        return text
    return f"'{text}'"


@dataclass
class Filter:
    name: str
    args: List[Tuple[Optional[str], Any]] = field(default_factory=list)

    def render(self) -> str:
        if not self.args:
            return self.name
        parts = []
        for key, value in self.args:
            parts.append(_format_value(value) if key is None else f"{key}={_format_value(value)}")
        return f"{self.name}=" + ":".join(parts)


def node(name: str, *positional: Any, **named: Any) -> Filter:
    """Shorthand: node("scale", 1080, 1920, flags="bicubic")."""
    args: List[Tuple[Optional[str], Any]] = [(None, p) for p in positional]
    args.extend(named.items())
    return Filter(name=name, args=args)


@dataclass
class Chain:
    inputs: List[str]
    filters: List[Filter]
    outputs: List[str]

    def render(self) -> str:
        ins = "".join(f"[{label}]" for label in self.inputs)
        outs = "".join(f"[{label}]" for label in self.outputs)
        return ins + ",".join(f.render() for f in self.filters) + outs


class FilterGraph:
    def __init__(self) -> None:
        self.chains: List[Chain] = []

    def add(self, inputs: Sequence[str], filters: Sequence[Filter], outputs: Sequence[str]) -> "FilterGraph":
        if not filters:
            raise ValueError("a chain needs at least one filter")
        self.chains.append(Chain(list(inputs), list(filters), list(outputs)))
        return self

    def validate(self) -> None:
        """Every label is produced once and consumed once; inputs are stream specs or earlier outputs."""
        produced = set()
        consumed = set()
        for chain in self.chains:
            for label in chain.inputs:
                if _STREAM_SPEC.match(label):
                    continue
                if label not in produced:
                    raise ValueError(f"label [{label}] used before it is produced")
                if label in consumed:
                    raise ValueError(f"label [{label}] consumed twice")
                consumed.add(label)
            for label in chain.outputs:
                if label in produced:
                    raise ValueError(f"label [{label}] produced twice")
                produced.add(label)
        dangling = produced - consumed
        if len(dangling) != 1:
            raise ValueError(f"graph must have exactly one unconsumed output, got {sorted(dangling)}")

    @property
    def output(self) -> str:
        consumed = {label for chain in self.chains for label in chain.inputs}
        outs = [label for chain in self.chains for label in chain.outputs if label not in consumed]
        return outs[-1]

    def render(self) -> str:
        self.validate()
        return ";".join(chain.render() for chain in self.chains)
