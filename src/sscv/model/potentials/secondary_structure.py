"""
Continuous secondary-structure order parameters.

Every residue-aligned backbone segment with the length of the reference motif
is compared to the motif; each distance is passed through a switching
function and the resulting contributions are reduced into one or more
outputs. With the default sum reducer the output counts the segments that
look like the motif:

    s = sum_i (1 - ((r_i - d0) / r0)^n) / (1 - ((r_i - d0) / r0)^m)
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

import torch

from sscv.data import const
from sscv.data.motifs import (
    ReferenceTemplate,
    get_reference_structure,
    validate_reference_coords,
)
from sscv.model.potentials.collective_variables import DistanceResult, segment_distance
from sscv.model.potentials.combine import TaskCombineFunction, create_combination
from sscv.model.potentials.reducers import Reducer, scatter_window_gradient
from sscv.model.potentials.segments import Segments, enumerate_segments
from sscv.model.potentials.switching import RationalSwitchingFunction


@dataclass(frozen=True)
class WindowTransform:
    """
    Per-window polynomial c_w * (s_w - a_w)^{p_w}, applied before the reducer.

    A scalar applies to every segment; a list needs one entry per segment.
    Segments skipped as negligible enter with s_w = 0, so a power below one
    needs an offset that keeps s_w - a_w away from zero.
    """

    coefficients: Union[float, Tuple[float, ...]] = 1.0
    parameters: Union[float, Tuple[float, ...]] = 0.0
    powers: Union[float, Tuple[float, ...]] = 1.0

    def __post_init__(self):
        for name in ("coefficients", "parameters", "powers"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)):
                object.__setattr__(self, name, tuple(float(v) for v in value))

    def build(self, n_windows: int) -> TaskCombineFunction:
        return create_combination(
            n_tasks=n_windows,
            coefficients=self.coefficients,
            parameters=self.parameters,
            powers=self.powers,
        )


@dataclass(frozen=True)
class SecondaryStructureOutput:
    """One configured output: metric, switching function, optional transform and reducer."""

    name: str = "value"
    metric: str = "drmsd"
    switching: RationalSwitchingFunction = field(default_factory=RationalSwitchingFunction)
    reducer: Reducer = field(default_factory=Reducer)
    transform: Optional[WindowTransform] = None

    def __post_init__(self):
        key = self.metric.strip().lower()
        if key not in const.metric_aliases:
            raise ValueError(f"Unknown metric: {self.metric}. Available metrics: {sorted(const.metric_aliases.keys())}")
        object.__setattr__(self, "metric", const.metric_aliases[key])


@dataclass
class CVOutput:
    """
    Value and derivatives of one output.

    Attributes:
        value: [multiplicity] (or scalar for unbatched input)
        gradient: [multiplicity, N_atoms, 3] (or [N_atoms, 3])
        box_gradient: [multiplicity, 3, 3] (or [3, 3])
    """

    value: torch.Tensor
    gradient: torch.Tensor
    box_gradient: torch.Tensor


def _resolve_reference(reference) -> ReferenceTemplate:
    if isinstance(reference, ReferenceTemplate):
        return reference
    if isinstance(reference, str):
        return get_reference_structure(reference)
    if isinstance(reference, torch.Tensor):
        reference = reference.detach().cpu().tolist()
    return ReferenceTemplate(name="custom", coords=validate_reference_coords(reference, "custom"))


def _unique_names(outputs: Sequence[SecondaryStructureOutput]) -> None:
    names = [o.name for o in outputs]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ValueError(f"Output names must be unique, got duplicates: {duplicates}")


class ContinuousSecondaryStructure:
    """
    Count (or otherwise reduce) backbone segments resembling a reference motif.

    Args:
        reference: Motif name, ReferenceTemplate, or [n_atoms, 3] coordinates
        chains: Ordered backbone atom indices of each chain
        outputs: Configured outputs; defaults to a single DRMSD sum named "value"
        reference_scale: Factor converting template units into coordinate units
        bond_length: DRMSD pairs closer than this in the (scaled) reference are skipped
        pbc: Make segments whole with the minimum-image convention when a box is given
        nl_stride: Refresh interval of the negligible-segment list (0 disables skipping)
        degeneracy_tol: Relative eigenvalue gap below which a Kabsch rotation is flagged
        atoms_per_residue: Backbone atoms per residue
        verbose: Print a setup summary
    """

    def __init__(
        self,
        reference: Union[str, ReferenceTemplate, Sequence[Sequence[float]], torch.Tensor],
        chains: Sequence[Sequence[int]],
        outputs: Optional[Sequence[SecondaryStructureOutput]] = None,
        reference_scale: float = 1.0,
        bond_length: float = 0.0,
        pbc: bool = True,
        nl_stride: int = 0,
        degeneracy_tol: float = const.degeneracy_tolerance,
        atoms_per_residue: int = const.ATOMS_PER_RESIDUE,
        verbose: bool = False,
    ):
        self.template = _resolve_reference(reference)
        if not reference_scale > 0:
            raise ValueError(f"reference_scale must be positive, got {reference_scale}")
        if nl_stride < 0:
            raise ValueError(f"nl_stride must be non-negative, got {nl_stride}")

        self.reference_scale = reference_scale
        self.reference = self.template.as_tensor(scale=reference_scale)
        self.bond_length = bond_length
        self.pbc = pbc
        self.nl_stride = nl_stride
        self.degeneracy_tol = degeneracy_tol
        self.chains = [list(chain) for chain in chains]
        self.segments: Segments = enumerate_segments(
            self.chains, self.template.n_atoms, atoms_per_residue
        )

        self.outputs: List[SecondaryStructureOutput] = list(outputs) if outputs else [SecondaryStructureOutput()]
        _unique_names(self.outputs)
        self.metrics: List[str] = sorted({o.metric for o in self.outputs})
        self._transforms: Dict[str, TaskCombineFunction] = {
            o.name: o.transform.build(self.n_windows) for o in self.outputs if o.transform is not None
        }

        # Negligible-segment bookkeeping, per metric
        self._active: Dict[str, Optional[torch.Tensor]] = {metric: None for metric in self.metrics}
        self._calls = 0

        if verbose:
            for line in self.describe():
                print(line)

    @property
    def n_windows(self) -> int:
        return self.segments.n_windows

    @property
    def output_names(self) -> List[str]:
        return [o.name for o in self.outputs]

    def describe(self) -> List[str]:
        lines = [f"[sscv] Reference motif '{self.template.name}' with {self.template.n_atoms} atoms"]
        for i, chain in enumerate(self.chains, start=1):
            lines.append(f"  Backbone {i} is calculated from atoms : " + " ".join(str(a) for a in chain))
        lines.append(f"  {self.n_windows} segments of {self.template.n_residues} residues")
        for output in self.outputs:
            lines.append(
                f"  output '{output.name}': {output.metric} distance, "
                f"{output.switching.describe()}, {output.reducer.kind} reducer"
            )
            if output.name in self._transforms:
                for line in self._transforms[output.name].describe():
                    lines.append(f"    per-segment transform {line}")
        if self.nl_stride > 0:
            lines.append(f"  negligible segments re-checked every {self.nl_stride} steps")
        return lines

    def reset(self) -> None:
        """Forget the negligible-segment classification."""
        self._active = {metric: None for metric in self.metrics}
        self._calls = 0

    # -------------------------------------------------------------------------
    # Input handling
    # -------------------------------------------------------------------------

    def _prepare_coords(self, coords: torch.Tensor):
        coords = torch.as_tensor(coords)
        if not coords.is_floating_point():
            coords = coords.to(torch.float64)
        batched = coords.dim() == 3
        if coords.dim() == 2:
            coords = coords.unsqueeze(0)
        if coords.dim() != 3 or coords.shape[-1] != 3:
            raise ValueError(f"Coordinates must have shape [N_atoms, 3] or [multiplicity, N_atoms, 3], got {tuple(coords.shape)}")
        if not bool(torch.isfinite(coords).all()):
            raise ValueError("Coordinates contain non-finite values")
        max_index = int(self.segments.index.max())
        if max_index >= coords.shape[1]:
            raise ValueError(f"Backbone atom index {max_index} is out of range for {coords.shape[1]} atoms")
        return coords, batched

    def _prepare_box(self, box, coords: torch.Tensor) -> Optional[torch.Tensor]:
        if box is None or not self.pbc:
            return None
        box = torch.as_tensor(box, dtype=coords.dtype, device=coords.device)
        if box.shape not in ((3,), (3, 3)):
            raise ValueError(f"Box must be [3] lengths or a [3, 3] cell matrix, got {tuple(box.shape)}")
        if not bool(torch.isfinite(box).all()):
            raise ValueError("Box contains non-finite values")
        if box.dim() == 1 and not bool((box > 0).all()):
            raise ValueError("Box lengths must be positive")
        if box.dim() == 2 and float(torch.det(box)) == 0.0:
            raise ValueError("Box cell matrix is singular")
        return box

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    def evaluate_windows(self, coords: torch.Tensor, box=None) -> Dict[str, DistanceResult]:
        """Distances of every segment for each configured metric, without skipping."""
        coords, _ = self._prepare_coords(coords)
        box = self._prepare_box(box, coords)
        reference = self.reference.to(device=coords.device, dtype=coords.dtype)
        index = self.segments.index.to(coords.device)
        return {
            metric: segment_distance(
                coords, index, reference, metric, box, self.bond_length, self.degeneracy_tol
            )
            for metric in self.metrics
        }

    def _is_refresh(self, metric: str, step: int) -> bool:
        if self.nl_stride == 0 or self._active[metric] is None:
            return True
        return step % self.nl_stride == 0

    def compute(self, coords: torch.Tensor, box=None, step: Optional[int] = None) -> Dict[str, CVOutput]:
        """
        Evaluate all outputs and their gradients.

        Args:
            coords: [N_atoms, 3] or [multiplicity, N_atoms, 3]
            box: Optional periodic box, [3] lengths or [3, 3] cell rows
            step: Simulation step used for the negligible-segment refresh;
                defaults to the number of previous calls

        Returns:
            Dict mapping output name to CVOutput

        Raises:
            ValueError: for malformed or non-finite input; nothing is returned in that case
        """
        coords, batched = self._prepare_coords(coords)
        box = self._prepare_box(box, coords)
        if step is None:
            step = self._calls
        self._calls += 1

        multiplicity, n_atoms, _ = coords.shape
        reference = self.reference.to(device=coords.device, dtype=coords.dtype)
        index = self.segments.index.to(coords.device)
        n_windows = index.shape[0]

        results: Dict[str, CVOutput] = {}
        new_active: Dict[str, torch.Tensor] = {}

        for metric in self.metrics:
            refresh = self._is_refresh(metric, step)
            if refresh:
                active = torch.ones(n_windows, dtype=torch.bool, device=coords.device)
            else:
                active = self._active[metric].to(coords.device)
            active_index = index[active]

            if active_index.shape[0] > 0:
                distances = segment_distance(
                    coords, active_index, reference, metric, box, self.bond_length, self.degeneracy_tol
                )
            else:
                distances = None

            relevant = torch.zeros(n_windows, dtype=torch.bool, device=coords.device)
            for output in self.outputs:
                if output.metric != metric:
                    continue
                results[output.name] = self._reduce(
                    output, distances, active, active_index, multiplicity, n_atoms, coords
                )
                if refresh and distances is not None:
                    near = (distances.value <= output.switching.d_max).any(dim=0)
                    relevant[active] |= near

            if refresh and self.nl_stride > 0:
                new_active[metric] = relevant

        # Only commit the classification once every output succeeded
        self._active.update(new_active)

        if not batched:
            results = {
                name: CVOutput(r.value[0], r.gradient[0], r.box_gradient[0]) for name, r in results.items()
            }
        return results

    def _reduce(
        self,
        output: SecondaryStructureOutput,
        distances: Optional[DistanceResult],
        active: torch.Tensor,
        active_index: torch.Tensor,
        multiplicity: int,
        n_atoms: int,
        coords: torch.Tensor,
    ) -> CVOutput:
        n_windows = active.shape[0]
        s_full = torch.zeros(multiplicity, n_windows, dtype=coords.dtype, device=coords.device)
        if distances is not None:
            s, ds = output.switching.compute(distances.value, compute_derivative=True)
            s_full[:, active] = s

        transform = self._transforms.get(output.name)
        if transform is not None:
            s_full, dt = transform.compute(s_full)
        value, weights = output.reducer.reduce(s_full)
        if transform is not None:
            weights = weights * dt

        if distances is None:
            return CVOutput(
                value=value,
                gradient=torch.zeros_like(coords),
                box_gradient=torch.zeros(multiplicity, 3, 3, dtype=coords.dtype, device=coords.device),
            )

        # d(output)/d(distance_w) for every evaluated window
        chain = weights[:, active] * ds
        gradient = scatter_window_gradient(chain, distances.gradient, active_index, n_atoms)
        box_gradient = (chain[..., None, None] * distances.box_gradient).sum(dim=1)
        return CVOutput(value=value, gradient=gradient, box_gradient=box_gradient)
