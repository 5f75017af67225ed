"""
Configuration dataclasses for secondary-structure CVs and combinations.

Each section of the YAML input is parsed into one of these dataclasses by
the parse_* functions below. Validation that needs the numerical objects
(switching parameters, chain lengths, coefficient sums) happens again when
the factory builds them.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sscv.data import const


@dataclass
class SwitchingConfig:
    """Rational switching function parameters."""

    r0: float = const.default_r0
    d0: float = const.default_d0
    nn: int = const.default_nn
    mm: int = const.default_mm
    tolerance: float = const.switching_tolerance


@dataclass
class TransformConfig:
    """Per-segment polynomial applied to the switched contributions before reduction."""

    coefficients: List[float] = field(default_factory=lambda: [1.0])
    parameters: List[float] = field(default_factory=lambda: [0.0])
    powers: List[float] = field(default_factory=lambda: [1.0])


@dataclass
class OutputConfig:
    """One output of a secondary-structure CV."""

    name: Optional[str] = None
    metric: Optional[str] = None
    reducer: str = "sum"
    beta: float = const.default_beta
    switching: Optional[SwitchingConfig] = None
    transform: Optional[TransformConfig] = None


@dataclass
class SecondaryStructureConfig:
    """A secondary-structure CV: one motif evaluated over a set of chains."""

    label: str = "ss"
    motif: Optional[str] = None
    reference: Optional[List[List[float]]] = None
    chains: List[List[int]] = field(default_factory=list)
    metric: str = "drmsd"
    switching: SwitchingConfig = field(default_factory=SwitchingConfig)
    reference_scale: float = 1.0
    bond_length: float = 0.0
    pbc: bool = True
    nl_stride: int = 0
    degeneracy_tol: float = const.degeneracy_tolerance
    outputs: List[OutputConfig] = field(default_factory=list)
    verbose: bool = False


@dataclass
class CombineConfig:
    """Polynomial combination of named CV outputs."""

    label: str = "combine"
    arguments: List[str] = field(default_factory=list)
    coefficients: List[float] = field(default_factory=lambda: [1.0])
    parameters: List[float] = field(default_factory=lambda: [0.0])
    powers: List[float] = field(default_factory=lambda: [1.0])
    normalize: bool = False
    periodic: Optional[List[Optional[Tuple[float, float]]]] = None
    output_periodic: Optional[Tuple[float, float]] = None


@dataclass
class SSCVConfig:
    """Full configuration document."""

    secondary_structure: List[SecondaryStructureConfig] = field(default_factory=list)
    combine: List[CombineConfig] = field(default_factory=list)


# =============================================================================
# Section parsing
# =============================================================================

def _check_keys(data: Dict[str, Any], allowed: set, section: str) -> None:
    unknown = sorted(set(data.keys()) - allowed)
    if unknown:
        raise ValueError(f"Unknown keys in '{section}': {unknown}. Allowed keys: {sorted(allowed)}")


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def parse_atom_range(spec: Any) -> List[int]:
    """
    Parse a chain specification.

    Accepts a list of atom indices, or a string "start-end" (inclusive,
    0-based), or a comma-separated mix such as "0-9,15-19".
    """
    if isinstance(spec, (list, tuple)):
        return [int(a) for a in spec]
    if not isinstance(spec, str):
        raise ValueError(f"Invalid chain specification: {spec!r}")

    atoms: List[int] = []
    for part in spec.split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            start, end = part.split("-", 1)
            start, end = int(start), int(end)
            if end < start:
                raise ValueError(f"Invalid atom range '{part}'")
            atoms.extend(range(start, end + 1))
        else:
            atoms.append(int(part))
    return atoms


def parse_switching(data: Optional[Dict[str, Any]], default: Optional[SwitchingConfig] = None) -> SwitchingConfig:
    base = default if default is not None else SwitchingConfig()
    if data is None:
        return SwitchingConfig(**vars(base))
    if not isinstance(data, dict):
        raise ValueError(f"'switching' must be a mapping, got {type(data).__name__}")
    # PLUMED-style keyword spellings are accepted as well
    aliases = {"r_0": "r0", "d_0": "d0", "n": "nn", "m": "mm"}
    data = {aliases.get(k.lower(), k.lower()): v for k, v in data.items()}
    _check_keys(data, {"r0", "d0", "nn", "mm", "tolerance"}, "switching")
    merged = {**vars(base), **data}
    return SwitchingConfig(
        r0=float(merged["r0"]),
        d0=float(merged["d0"]),
        nn=int(merged["nn"]),
        mm=int(merged["mm"]),
        tolerance=float(merged["tolerance"]),
    )


def parse_transform(data: Any) -> TransformConfig:
    if not isinstance(data, dict):
        raise ValueError(f"'transform' must be a mapping, got {type(data).__name__}")
    _check_keys(data, {"coefficients", "parameters", "powers"}, "transform")
    return TransformConfig(
        coefficients=[float(c) for c in _as_list(data.get("coefficients", 1.0))],
        parameters=[float(p) for p in _as_list(data.get("parameters", 0.0))],
        powers=[float(p) for p in _as_list(data.get("powers", 1.0))],
    )


def parse_output(data: Dict[str, Any], default_switching: SwitchingConfig) -> OutputConfig:
    if isinstance(data, str):
        data = {"reducer": data}
    _check_keys(data, {"name", "metric", "type", "reducer", "beta", "switching", "transform"}, "outputs")
    metric = data.get("metric", data.get("type"))
    return OutputConfig(
        name=data.get("name"),
        metric=metric,
        reducer=str(data.get("reducer", "sum")),
        beta=float(data.get("beta", const.default_beta)),
        switching=parse_switching(data["switching"], default_switching) if "switching" in data else None,
        transform=parse_transform(data["transform"]) if data.get("transform") is not None else None,
    )


def assign_output_names(outputs: List[OutputConfig]) -> List[str]:
    """
    Name unnamed outputs after their reducer.

    A single unnamed output is called "value"; colliding reducer labels get
    numeric suffixes (lessthan-1, lessthan-2, ...).
    """
    from sscv.model.potentials.reducers import resolve_reducer

    if len(outputs) == 1 and outputs[0].name is None:
        return ["value"]

    labels = [
        o.name if o.name is not None else const.reducer_labels[resolve_reducer(o.reducer)]
        for o in outputs
    ]
    names = []
    for i, (output, label) in enumerate(zip(outputs, labels)):
        if output.name is None and labels.count(label) > 1:
            rank = sum(1 for j in range(i + 1) if labels[j] == label and outputs[j].name is None)
            label = f"{label}-{rank}"
        names.append(label)
    return names


def parse_bond_length(value: Any, reference_scale: float = 1.0) -> float:
    """
    DRMSD bond cutoff in coordinate units.

    A number is used as given. `true` or "covalent" selects the covalent
    preset (const.covalent_bond_length, in Angstrom) scaled by reference_scale;
    `false`, "no" or a missing value keep every pair.
    """
    if value is None or value is False:
        return 0.0
    if value is True:
        return const.covalent_bond_length * reference_scale
    if isinstance(value, str):
        key = value.strip().lower()
        if key == "covalent":
            return const.covalent_bond_length * reference_scale
        if key == "no":
            return 0.0
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"'bond_length' must be a number, 'covalent' or 'no', got {value!r}") from e


def parse_secondary_structure_section(data: Dict[str, Any], index: int = 0) -> SecondaryStructureConfig:
    """Parse one entry of the 'secondary_structure' list."""
    if not isinstance(data, dict):
        raise ValueError(f"secondary_structure entries must be mappings, got {type(data).__name__}")
    _check_keys(
        data,
        {
            "label", "motif", "reference", "chains", "metric", "type", "switching",
            "reference_scale", "bond_length", "pbc", "nl_stride", "degeneracy_tol",
            "outputs", "verbose",
        },
        "secondary_structure",
    )

    motif = data.get("motif")
    reference = data.get("reference")
    if (motif is None) == (reference is None):
        raise ValueError("secondary_structure entries need exactly one of 'motif' or 'reference'")

    chains = [parse_atom_range(chain) for chain in _as_list(data.get("chains"))]
    if not chains:
        raise ValueError("secondary_structure entries need at least one chain in 'chains'")

    reference_scale = float(data.get("reference_scale", 1.0))
    switching = parse_switching(data.get("switching"))
    outputs = [parse_output(o, switching) for o in _as_list(data.get("outputs"))]
    if not outputs:
        outputs = [OutputConfig()]
    for output, name in zip(outputs, assign_output_names(outputs)):
        output.name = name

    return SecondaryStructureConfig(
        label=str(data.get("label", f"ss{index}" if index else "ss")),
        motif=motif,
        reference=reference,
        chains=chains,
        metric=str(data.get("metric", data.get("type", "drmsd"))),
        switching=switching,
        reference_scale=reference_scale,
        bond_length=parse_bond_length(data.get("bond_length"), reference_scale),
        pbc=bool(data.get("pbc", True)),
        nl_stride=int(data.get("nl_stride", 0)),
        degeneracy_tol=float(data.get("degeneracy_tol", const.degeneracy_tolerance)),
        outputs=outputs,
        verbose=bool(data.get("verbose", False)),
    )


def _parse_domain(value: Any, what: str) -> Optional[Tuple[float, float]]:
    if value is None or value is False or (isinstance(value, str) and value.lower() == "no"):
        return None
    if isinstance(value, (list, tuple)) and len(value) == 2:
        return (float(value[0]), float(value[1]))
    raise ValueError(f"'{what}' must be 'no' or [min, max], got {value!r}")


def parse_combine_section(data: Dict[str, Any], index: int = 0) -> CombineConfig:
    """Parse one entry of the 'combine' list."""
    if not isinstance(data, dict):
        raise ValueError(f"combine entries must be mappings, got {type(data).__name__}")
    _check_keys(
        data,
        {"label", "arguments", "coefficients", "parameters", "powers", "normalize", "periodic", "output_periodic"},
        "combine",
    )
    arguments = [str(a) for a in _as_list(data.get("arguments"))]
    if not arguments:
        raise ValueError("combine entries need at least one argument in 'arguments'")

    periodic = data.get("periodic")
    if periodic is not None:
        periodic_list = _as_list(periodic)
        if len(periodic_list) == 2 and all(isinstance(v, (int, float)) for v in periodic_list):
            periodic = [_parse_domain(periodic_list, "periodic")] * len(arguments)
        else:
            periodic = [_parse_domain(p, "periodic") for p in periodic_list]

    return CombineConfig(
        label=str(data.get("label", f"combine{index}" if index else "combine")),
        arguments=arguments,
        coefficients=[float(c) for c in _as_list(data.get("coefficients", 1.0))],
        parameters=[float(p) for p in _as_list(data.get("parameters", 0.0))],
        powers=[float(p) for p in _as_list(data.get("powers", 1.0))],
        normalize=bool(data.get("normalize", False)),
        periodic=periodic,
        output_periodic=_parse_domain(data.get("output_periodic"), "output_periodic"),
    )


def parse_sscv_section(data: Dict[str, Any]) -> SSCVConfig:
    """Parse a full configuration document."""
    if not isinstance(data, dict):
        raise ValueError("Configuration must be a mapping")
    _check_keys(data, {"secondary_structure", "combine"}, "configuration")

    ss_configs = [
        parse_secondary_structure_section(entry, i)
        for i, entry in enumerate(_as_list(data.get("secondary_structure")))
    ]
    combine_configs = [
        parse_combine_section(entry, i) for i, entry in enumerate(_as_list(data.get("combine")))
    ]
    if not ss_configs and not combine_configs:
        raise ValueError("Configuration needs a 'secondary_structure' or 'combine' section")

    labels = [c.label for c in ss_configs] + [c.label for c in combine_configs]
    duplicates = sorted({l for l in labels if labels.count(l) > 1})
    if duplicates:
        raise ValueError(f"Labels must be unique, got duplicates: {duplicates}")

    return SSCVConfig(secondary_structure=ss_configs, combine=combine_configs)
