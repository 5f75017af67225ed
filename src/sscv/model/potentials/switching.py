"""Rational switching function mapping a distance onto a [0, 1] contribution."""

import math
from dataclasses import dataclass
from typing import Tuple, Union

import torch

from sscv.data import const


@dataclass(frozen=True)
class RationalSwitchingFunction:
    """
    s(r) = (1 - x^n) / (1 - x^m),  x = (r - d0) / r0

    s = 1 for r <= d0. The removable singularity at x = 1 is replaced by its
    limit s = n/m, ds/dx = n (n - m) / (2 m).
    """

    r0: float = const.default_r0
    d0: float = const.default_d0
    nn: int = const.default_nn
    mm: int = const.default_mm
    tolerance: float = const.switching_tolerance

    def __post_init__(self):
        if not self.r0 > 0:
            raise ValueError(f"Switching function r0 must be positive, got {self.r0}")
        if not self.nn > 0:
            raise ValueError(f"Switching function n must be positive, got {self.nn}")
        if not self.mm > self.nn:
            raise ValueError(
                f"Switching function needs m > n to decay to zero, got n={self.nn}, m={self.mm}"
            )
        if not 0 < self.tolerance < 1:
            raise ValueError(f"Switching tolerance must be in (0, 1), got {self.tolerance}")

    @property
    def d_max(self) -> float:
        """Distance beyond which s(r) is below the tolerance."""
        return self.d0 + self.r0 * math.pow(self.tolerance, 1.0 / (self.nn - self.mm))

    def compute(
        self,
        r: torch.Tensor,
        compute_derivative: bool = False,
    ) -> Union[torch.Tensor, Tuple[torch.Tensor, torch.Tensor]]:
        """
        Args:
            r: Distances, any shape
            compute_derivative: Also return ds/dr

        Returns:
            s, or (s, ds/dr) with the shape of r
        """
        x = (r - self.d0) / self.r0
        inside = x <= 0
        singular = (x - 1.0).abs() < 1e-6
        regular = ~inside & ~singular

        # Keep the unused branches finite
        x_safe = torch.where(regular, x, torch.full_like(x, 0.5))
        num = 1.0 - x_safe ** self.nn
        den = 1.0 - x_safe ** self.mm
        # x^m overflows the dtype long after s has reached zero
        far = regular & ~torch.isfinite(den)
        near = regular & ~far
        s_regular = num / den

        s = torch.where(near, s_regular, torch.ones_like(x))
        s = torch.where(far, torch.zeros_like(x), s)
        s = torch.where(singular, torch.full_like(x, self.nn / self.mm), s)

        if not compute_derivative:
            return s

        # ds/dx = (m x^(m-1) s - n x^(n-1)) / den, no x^(n+m) products
        ds_regular = (self.mm * x_safe ** (self.mm - 1) * s - self.nn * x_safe ** (self.nn - 1)) / den

        ds_dx = torch.where(near, ds_regular, torch.zeros_like(x))
        ds_dx = torch.where(
            singular,
            torch.full_like(x, 0.5 * self.nn * (self.nn - self.mm) / self.mm),
            ds_dx,
        )
        return s, ds_dx / self.r0

    def describe(self) -> str:
        return (
            f"rational switching function with parameters d0={self.d0} r0={self.r0} "
            f"nn={self.nn} mm={self.mm}"
        )
