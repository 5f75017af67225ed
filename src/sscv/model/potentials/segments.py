"""
Enumeration of residue-aligned backbone segments.

A chain is an ordered list of atom indices grouped into residues of
ATOMS_PER_RESIDUE atoms. Every contiguous run of residues with the same
length as the reference template is one segment.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

import torch

from sscv.data import const


@dataclass(frozen=True)
class Segments:
    """All windows of a set of chains, as a [n_windows, window_size] index tensor."""

    index: torch.Tensor
    chain_index: torch.Tensor
    n_chains: int

    @property
    def n_windows(self) -> int:
        return self.index.shape[0]

    @property
    def window_size(self) -> int:
        return self.index.shape[1]

    def atoms(self) -> torch.Tensor:
        """Sorted unique atom indices touched by any window."""
        return torch.unique(self.index)


def count_windows(n_residues: int, template_residues: int) -> int:
    return max(0, n_residues - template_residues + 1)


def enumerate_segments(
    chains: Sequence[Sequence[int]],
    template_atoms: int,
    atoms_per_residue: int = const.ATOMS_PER_RESIDUE,
    device: Optional[torch.device] = None,
) -> Segments:
    """
    Build every residue-aligned window of template length along each chain.

    Args:
        chains: Ordered atom indices for each backbone chain
        template_atoms: Number of atoms in the reference template
        atoms_per_residue: Backbone atoms per residue

    Returns:
        Segments with index [n_windows, template_atoms] and the chain each window came from

    Raises:
        ValueError: if the template is not a whole number of residues, a chain is
            not a whole number of residues, or a chain is shorter than the template
    """
    if template_atoms <= 0 or template_atoms % atoms_per_residue != 0:
        raise ValueError(
            f"Reference structure must be a positive multiple of {atoms_per_residue} atoms, got {template_atoms}"
        )
    if len(chains) == 0:
        raise ValueError("At least one backbone chain is required")

    template_residues = template_atoms // atoms_per_residue
    windows: List[List[int]] = []
    chain_of_window: List[int] = []

    for chain_id, chain in enumerate(chains):
        chain = [int(a) for a in chain]
        if len(chain) % atoms_per_residue != 0:
            raise ValueError(
                f"Backbone chain {chain_id} has {len(chain)} atoms, which is not a multiple of "
                f"{atoms_per_residue} atoms per residue"
            )
        n_residues = len(chain) // atoms_per_residue
        if n_residues < template_residues:
            raise ValueError(
                f"Backbone chain {chain_id} has {n_residues} residues but the reference needs "
                f"{template_residues}. Each chain must contain at least {template_residues} residues"
            )
        if any(a < 0 for a in chain):
            raise ValueError(f"Backbone chain {chain_id} contains negative atom indices")

        for ires in range(count_windows(n_residues, template_residues)):
            start = ires * atoms_per_residue
            windows.append(chain[start:start + template_atoms])
            chain_of_window.append(chain_id)

    index = torch.tensor(windows, dtype=torch.long, device=device)
    chain_index = torch.tensor(chain_of_window, dtype=torch.long, device=device)
    return Segments(index=index, chain_index=chain_index, n_chains=len(chains))
