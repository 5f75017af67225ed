"""
Reductions of per-window contributions into a single output.

Every reducer returns the output value together with the weights
d(output)/d(contribution_w), so that value and gradient always come from the
same formula. The atom gradient is then sum_w weight_w * d(contribution_w)/dx.
"""

from dataclasses import dataclass
from typing import Callable, Dict, Tuple

import torch

from sscv.data import const


def _sum(s: torch.Tensor, beta: float) -> Tuple[torch.Tensor, torch.Tensor]:
    return s.sum(dim=-1), torch.ones_like(s)


def _mean(s: torch.Tensor, beta: float) -> Tuple[torch.Tensor, torch.Tensor]:
    n_windows = s.shape[-1]
    return s.mean(dim=-1), torch.full_like(s, 1.0 / n_windows)


def _min(s: torch.Tensor, beta: float) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    beta / log sum exp(beta / s), with weights (value / s_w)^2 softmax(beta / s)_w.

    A non-positive contribution (or one so small that beta / s overflows) is
    the minimum; the output is then zero with zero weights.
    """
    vanishing = ~(s > 0) | ~torch.isfinite(beta / s)
    zero_row = vanishing.any(dim=-1, keepdim=True)
    s_safe = torch.where(zero_row, torch.ones_like(s), s)

    z = beta / s_safe
    value = beta / torch.logsumexp(z, dim=-1, keepdim=True)
    weights = (value / s_safe) ** 2 * torch.softmax(z, dim=-1)

    value = torch.where(zero_row, torch.zeros_like(value), value)
    weights = torch.where(zero_row, torch.zeros_like(weights), weights)
    return value.squeeze(-1), weights


def _alt_min(s: torch.Tensor, beta: float) -> Tuple[torch.Tensor, torch.Tensor]:
    # -1/beta log sum exp(-beta s); weights are the Boltzmann factors
    value = -torch.logsumexp(-beta * s, dim=-1) / beta
    weights = torch.softmax(-beta * s, dim=-1)
    return value, weights


def _soft_max(s: torch.Tensor, beta: float) -> Tuple[torch.Tensor, torch.Tensor]:
    value = torch.logsumexp(beta * s, dim=-1) / beta
    weights = torch.softmax(beta * s, dim=-1)
    return value, weights


def _lowest(s: torch.Tensor, beta: float) -> Tuple[torch.Tensor, torch.Tensor]:
    value, idx = s.min(dim=-1)
    weights = torch.zeros_like(s).scatter_(-1, idx.unsqueeze(-1), 1.0)
    return value, weights


def _highest(s: torch.Tensor, beta: float) -> Tuple[torch.Tensor, torch.Tensor]:
    value, idx = s.max(dim=-1)
    weights = torch.zeros_like(s).scatter_(-1, idx.unsqueeze(-1), 1.0)
    return value, weights


REDUCER_REGISTRY: Dict[str, Callable[[torch.Tensor, float], Tuple[torch.Tensor, torch.Tensor]]] = {
    "sum": _sum,
    "mean": _mean,
    "min": _min,
    "alt_min": _alt_min,
    "max": _soft_max,
    "lowest": _lowest,
    "highest": _highest,
}


def resolve_reducer(name: str) -> str:
    key = name.strip().lower()
    if key not in const.reducer_aliases:
        raise ValueError(f"Unknown reducer: {name}. Available reducers: {sorted(const.reducer_aliases.keys())}")
    return const.reducer_aliases[key]


@dataclass(frozen=True)
class Reducer:
    """A named reduction over windows, e.g. Reducer('min', beta=50.0)."""

    kind: str = "sum"
    beta: float = const.default_beta

    def __post_init__(self):
        object.__setattr__(self, "kind", resolve_reducer(self.kind))
        if self.kind in ("min", "alt_min", "max") and not self.beta > 0:
            raise ValueError(f"beta must be positive for the soft {self.kind} reducer, got {self.beta}")

    @property
    def is_smooth(self) -> bool:
        return self.kind not in ("lowest", "highest")

    def reduce(self, s: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Args:
            s: Per-window contributions [multiplicity, n_windows]

        Returns:
            value: [multiplicity]
            weights: [multiplicity, n_windows] d(value)/d(s)
        """
        if s.shape[-1] == 0:
            raise ValueError("Cannot reduce an empty set of windows")
        return REDUCER_REGISTRY[self.kind](s, self.beta)


def scatter_window_gradient(
    weights: torch.Tensor,
    window_gradient: torch.Tensor,
    index: torch.Tensor,
    n_atoms: int,
) -> torch.Tensor:
    """
    Accumulate weighted per-window gradients onto the full coordinate array.

    Args:
        weights: [multiplicity, n_windows]
        window_gradient: [multiplicity, n_windows, window_size, 3]
        index: Window atom indices [n_windows, window_size]
        n_atoms: Total number of atoms

    Returns:
        gradient: [multiplicity, n_atoms, 3], zero outside the windows
    """
    multiplicity = window_gradient.shape[0]
    weighted = weights[..., None, None] * window_gradient
    gradient = torch.zeros(
        multiplicity, n_atoms, 3, device=window_gradient.device, dtype=window_gradient.dtype
    )
    gradient.index_add_(1, index.reshape(-1), weighted.reshape(multiplicity, -1, 3))
    return gradient

