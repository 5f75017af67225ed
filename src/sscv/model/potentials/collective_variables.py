"""
Structural distances between backbone segments and a reference motif.

These functions compute, for every window of a chain at once, a scalar
distance to the reference template together with its analytic gradient with
respect to each atom of the window. Three metrics are available:

- optimal: RMSD after optimal superposition (Kabsch alignment)
- simple: RMSD after removing translation only
- drmsd: RMS difference of intra-window interatomic distances (no alignment)

All tensors are batched as [multiplicity, n_windows, window_size, 3].
"""

import warnings
from dataclasses import dataclass
from typing import Optional, Tuple

import torch

from sscv.data import const


@dataclass
class DistanceResult:
    """
    Per-window distance values and derivatives.

    Attributes:
        value: [multiplicity, n_windows] distances
        gradient: [multiplicity, n_windows, window_size, 3] d(value)/d(window atoms)
        box_gradient: [multiplicity, n_windows, 3, 3] box derivative -sum_i x_i (x) g_i
        degenerate: [multiplicity, n_windows] True where the optimal rotation is ambiguous
    """

    value: torch.Tensor
    gradient: torch.Tensor
    box_gradient: torch.Tensor
    degenerate: torch.Tensor


# =============================================================================
# Periodic boundaries
# =============================================================================

def minimum_image(delta: torch.Tensor, box: torch.Tensor) -> torch.Tensor:
    """
    Apply the minimum-image convention to difference vectors.

    Args:
        delta: Difference vectors [..., 3]
        box: Orthorhombic box lengths [3] or cell matrix [3, 3] with one lattice vector per row

    Returns:
        Wrapped differences [..., 3]
    """
    box = box.to(device=delta.device, dtype=delta.dtype)
    if box.dim() == 1:
        return delta - box * torch.round(delta / box)

    # Fractional coordinates: delta = frac @ box
    frac = delta @ torch.linalg.inv(box)
    frac = frac - torch.round(frac)
    return frac @ box


def make_whole(windows: torch.Tensor, box: Optional[torch.Tensor]) -> torch.Tensor:
    """
    Rebuild each window so that consecutive atoms are nearest periodic images.

    The first atom of each window is kept in place and every following atom is
    placed at the minimum-image displacement from its predecessor.

    Args:
        windows: [multiplicity, n_windows, window_size, 3]
        box: Periodic box, or None to leave coordinates untouched
    """
    if box is None:
        return windows
    bonds = minimum_image(windows[..., 1:, :] - windows[..., :-1, :], box)
    first = windows[..., :1, :]
    return torch.cat([first, first + torch.cumsum(bonds, dim=-2)], dim=-2)


def _box_gradient(windows: torch.Tensor, gradient: torch.Tensor) -> torch.Tensor:
    return -torch.einsum('mwti,mwtj->mwij', windows, gradient)


# =============================================================================
# Optimal superposition RMSD
# =============================================================================

def _kabsch_rotation(P: torch.Tensor, Q: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Compute optimal rotations to align P onto Q using the Kabsch algorithm.

    Args:
        P: Centered window coordinates [multiplicity, n_windows, window_size, 3]
        Q: Centered reference coordinates [window_size, 3]

    Returns:
        R: Rotation matrices [multiplicity, n_windows, 3, 3] such that P @ R aligns with Q
        gap: Relative gap between the two largest eigenvalues of the quaternion
             key matrix [multiplicity, n_windows]; zero means the rotation is not unique
    """
    # Covariance matrix H = P^T @ Q
    H = torch.einsum('mwti,tj->mwij', P, Q)

    # SVD: H = U @ S @ V^T
    U, S, Vh = torch.linalg.svd(H)

    # Reflection correction: flip the last column of U when det(U V^T) = -1
    d = torch.sign(torch.det(U @ Vh))
    d = torch.where(d == 0, torch.ones_like(d), d)
    U_corrected = U.clone()
    U_corrected[..., :, -1] = U[..., :, -1] * d.unsqueeze(-1)
    R = U_corrected @ Vh

    # lambda_1 - lambda_2 of the quaternion matrix is 2 (s2 + d s3)
    gap = 2.0 * (S[..., 1] + d * S[..., 2])
    scale = S[..., 0]
    safe_scale = torch.where(scale > 0, scale, torch.ones_like(scale))
    relative_gap = torch.where(scale > 0, gap / safe_scale, torch.zeros_like(gap))

    return R, relative_gap


def segment_rmsd(
    windows: torch.Tensor,
    reference: torch.Tensor,
    degeneracy_tol: float = const.degeneracy_tolerance,
) -> DistanceResult:
    """
    Compute the optimal-superposition RMSD of every window to the reference.

    Because the rotation is a stationary point of the displacement, its own
    derivative drops out and

        dRMSD/dx_i = (x_i - R_ref_i) / (N * RMSD)

    where R_ref_i is the reference point rotated onto the window frame.
    At RMSD = 0 the gradient takes its limiting value of zero.

    Args:
        windows: Window coordinates [multiplicity, n_windows, window_size, 3]
        reference: Reference template [window_size, 3]
        degeneracy_tol: Relative eigenvalue gap below which a window is flagged

    Returns:
        DistanceResult with per-window RMSD and gradients
    """
    n_atoms = windows.shape[-2]
    reference = reference.to(device=windows.device, dtype=windows.dtype)

    # Center both structures
    P = windows - windows.mean(dim=-2, keepdim=True)
    Q = reference - reference.mean(dim=0, keepdim=True)

    R, relative_gap = _kabsch_rotation(P, Q)
    degenerate = relative_gap <= degeneracy_tol

    # Residual in the reference frame
    P_aligned = torch.einsum('mwti,mwij->mwtj', P, R)
    diff = P_aligned - Q
    rmsd = torch.sqrt((diff ** 2).sum(dim=(-2, -1)) / n_atoms)

    # Back to the window frame: diff @ R^T = P - Q @ R^T
    diff_window = torch.einsum('mwtj,mwij->mwti', diff, R)
    nonzero = rmsd > 0
    safe_rmsd = torch.where(nonzero, rmsd, torch.ones_like(rmsd))
    gradient = diff_window / (n_atoms * safe_rmsd)[..., None, None]
    gradient = gradient * nonzero[..., None, None].to(gradient.dtype)

    return DistanceResult(
        value=rmsd,
        gradient=gradient,
        box_gradient=_box_gradient(windows, gradient),
        degenerate=degenerate,
    )


def segment_simple_rmsd(windows: torch.Tensor, reference: torch.Tensor) -> DistanceResult:
    """
    RMSD of every window to the reference after removing translation only.

    The window keeps its orientation, so the value changes under rotation.
    The centering drops out of the gradient because the residuals sum to zero:

        dRMSD/dx_i = (P_i - Q_i) / (N * RMSD)
    """
    n_atoms = windows.shape[-2]
    reference = reference.to(device=windows.device, dtype=windows.dtype)

    P = windows - windows.mean(dim=-2, keepdim=True)
    Q = reference - reference.mean(dim=0, keepdim=True)
    diff = P - Q
    rmsd = torch.sqrt((diff ** 2).sum(dim=(-2, -1)) / n_atoms)

    nonzero = rmsd > 0
    safe_rmsd = torch.where(nonzero, rmsd, torch.ones_like(rmsd))
    gradient = diff / (n_atoms * safe_rmsd)[..., None, None]
    gradient = gradient * nonzero[..., None, None].to(gradient.dtype)

    return DistanceResult(
        value=rmsd,
        gradient=gradient,
        box_gradient=_box_gradient(windows, gradient),
        degenerate=torch.zeros_like(rmsd, dtype=torch.bool),
    )


# =============================================================================
# Pairwise distance RMSD
# =============================================================================

def reference_pairs(
    reference: torch.Tensor,
    bond_length: float = 0.0,
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """
    Select the atom pairs used by the DRMSD metric.

    Args:
        reference: Reference template [window_size, 3]
        bond_length: Pairs whose reference distance is not larger than this are skipped

    Returns:
        first, second: Pair atom indices [n_pairs]
        target: Reference distances [n_pairs]
    """
    n_atoms = reference.shape[0]
    first, second = torch.triu_indices(n_atoms, n_atoms, offset=1, device=reference.device)
    target = torch.linalg.norm(reference[first] - reference[second], dim=-1)
    keep = target > bond_length
    if not bool(keep.any()):
        raise ValueError(f"No reference atom pairs are further apart than bond_length={bond_length}")
    return first[keep], second[keep], target[keep]


def segment_drmsd(
    windows: torch.Tensor,
    reference: torch.Tensor,
    bond_length: float = 0.0,
) -> DistanceResult:
    """
    Compute the distance RMSD of every window to the reference.

        DRMSD = sqrt( 1/N_pairs * sum_{i<j} (|x_i - x_j| - |r_i - r_j|)^2 )

    This needs no alignment and is invariant to rotation, translation and
    reflection of the window.

    Args:
        windows: Window coordinates [multiplicity, n_windows, window_size, 3]
        reference: Reference template [window_size, 3]
        bond_length: Reference pairs closer than this are excluded

    Returns:
        DistanceResult with per-window DRMSD and gradients
    """
    reference = reference.to(device=windows.device, dtype=windows.dtype)
    first, second, target = reference_pairs(reference, bond_length)
    n_pairs = target.shape[0]

    r_ij = windows[..., first, :] - windows[..., second, :]
    d_ij = torch.linalg.norm(r_ij, dim=-1)
    delta = d_ij - target
    drmsd = torch.sqrt((delta ** 2).sum(dim=-1) / n_pairs)

    # Coincident atoms have no defined direction; they contribute nothing
    safe_d = torch.where(d_ij > 0, d_ij, torch.ones_like(d_ij))
    r_hat = r_ij / safe_d.unsqueeze(-1) * (d_ij > 0).unsqueeze(-1).to(r_ij.dtype)

    nonzero = drmsd > 0
    safe_drmsd = torch.where(nonzero, drmsd, torch.ones_like(drmsd))
    pair_grad = (delta / (n_pairs * safe_drmsd.unsqueeze(-1))).unsqueeze(-1) * r_hat

    gradient = torch.zeros_like(windows)
    gradient.index_add_(2, first, pair_grad)
    gradient.index_add_(2, second, -pair_grad)
    gradient = gradient * nonzero[..., None, None].to(gradient.dtype)

    return DistanceResult(
        value=drmsd,
        gradient=gradient,
        box_gradient=_box_gradient(windows, gradient),
        degenerate=torch.zeros_like(drmsd, dtype=torch.bool),
    )


# =============================================================================
# Window evaluation
# =============================================================================

def gather_windows(coords: torch.Tensor, index: torch.Tensor) -> torch.Tensor:
    """Select window atoms: [multiplicity, N_atoms, 3] x [n_windows, window_size] -> [M, W, T, 3]."""
    return coords[:, index, :]


def segment_distance(
    coords: torch.Tensor,
    index: torch.Tensor,
    reference: torch.Tensor,
    metric: str = "optimal",
    box: Optional[torch.Tensor] = None,
    bond_length: float = 0.0,
    degeneracy_tol: float = const.degeneracy_tolerance,
) -> DistanceResult:
    """
    Compute the structural distance of each window in index to the reference.

    Args:
        coords: Atom coordinates [multiplicity, N_atoms, 3]
        index: Window atom indices [n_windows, window_size]
        reference: Reference template [window_size, 3], already in coordinate units
        metric: "optimal", "simple" or "drmsd"
        box: Optional periodic box; windows are made whole before measuring
        bond_length: DRMSD bonded-pair cutoff
        degeneracy_tol: Kabsch degeneracy threshold

    Returns:
        DistanceResult for the requested windows
    """
    if reference.shape[0] != index.shape[1]:
        raise ValueError(
            f"Reference has {reference.shape[0]} atoms but windows have {index.shape[1]}"
        )
    windows = make_whole(gather_windows(coords, index), box)

    if metric == "optimal":
        result = segment_rmsd(windows, reference, degeneracy_tol)
        if bool(result.degenerate.any()):
            n_bad = int(result.degenerate.sum())
            warnings.warn(
                f"Optimal rotation is ambiguous for {n_bad} segment(s) "
                f"(quaternion eigenvalue gap below {degeneracy_tol}). "
                f"RMSD is exact but the gradient direction is not unique.",
                RuntimeWarning,
                stacklevel=2,
            )
        return result
    elif metric == "simple":
        return segment_simple_rmsd(windows, reference)
    elif metric == "drmsd":
        return segment_drmsd(windows, reference, bond_length)
    else:
        raise ValueError(f"Unknown metric: {metric}. Available metrics: {const.metric_types}")
