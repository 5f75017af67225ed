import pytest
import torch

from sscv.data.motifs import get_reference_structure


@pytest.fixture
def template() -> torch.Tensor:
    """The alpha-plus-cis motif as a [15, 3] float64 tensor."""
    return get_reference_structure("alpha_plus_cis").as_tensor(dtype=torch.float64)


@pytest.fixture
def rotation() -> torch.Tensor:
    """A fixed proper rotation matrix."""
    generator = torch.Generator().manual_seed(7)
    q, _ = torch.linalg.qr(torch.randn(3, 3, generator=generator, dtype=torch.float64))
    if torch.det(q) < 0:
        q[:, 0] = -q[:, 0]
    return q


@pytest.fixture
def generator() -> torch.Generator:
    return torch.Generator().manual_seed(1234)


def numerical_gradient(f, x: torch.Tensor, h: float = 1e-6) -> torch.Tensor:
    """Central finite-difference gradient of a scalar function of x."""
    grad = torch.zeros_like(x)
    flat = x.reshape(-1)
    grad_flat = grad.reshape(-1)
    for i in range(flat.numel()):
        orig = flat[i].item()
        flat[i] = orig + h
        f_plus = float(f(x))
        flat[i] = orig - h
        f_minus = float(f(x))
        flat[i] = orig
        grad_flat[i] = (f_plus - f_minus) / (2 * h)
    return grad


@pytest.fixture
def finite_difference():
    return numerical_gradient


@pytest.fixture
def noisy_chain(template, generator) -> torch.Tensor:
    """A five-residue backbone built from two overlapping copies of the motif, plus noise."""
    tail = template[5:] + (template[10] - template[0])
    chain = torch.cat([template, tail], dim=0)
    return chain + 0.2 * torch.randn(chain.shape, generator=generator, dtype=chain.dtype)
