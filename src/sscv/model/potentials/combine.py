"""
Polynomial combination of differentiable scalars.

    C = sum_i c_i * (x_i - a_i)^{p_i}

The difference x_i - a_i is taken on the periodic domain of x_i when one is
given. Two variants share one interface:

- CombineFunction: a fixed set of named inputs, each with its own (c, a, p),
  combined into a single output.
- TaskCombineFunction: a single vector input whose elements are independent
  tasks (e.g. one per backbone segment); task t uses (c_t, a_t, p_t) and
  produces its own output.
"""

import math
from abc import ABC, abstractmethod
from typing import List, Mapping, Optional, Sequence, Tuple, Union

import torch

Domain = Optional[Tuple[float, float]]
ParameterInput = Union[float, Sequence[float]]


def periodic_difference(x: torch.Tensor, a: torch.Tensor, domain: Domain) -> torch.Tensor:
    """
    x - a, wrapped into [-period/2, period/2) when a domain is given.

    d(difference)/dx is 1 everywhere, including across the wrap.
    """
    delta = x - a
    if domain is None:
        return delta
    period = domain[1] - domain[0]
    return delta - period * torch.floor(delta / period + 0.5)


def _validate_domain(domain: Domain, what: str) -> Domain:
    if domain is None:
        return None
    lower, upper = float(domain[0]), float(domain[1])
    if not (math.isfinite(lower) and math.isfinite(upper)) or upper <= lower:
        raise ValueError(f"Periodic domain for {what} must satisfy min < max, got {domain}")
    return (lower, upper)


def _expand(values: ParameterInput, size: int, name: str) -> List[float]:
    """Broadcast a scalar or length-1 list; any other length must match size."""
    if isinstance(values, (int, float)):
        return [float(values)] * size
    values = [float(v) for v in values]
    if len(values) == 1:
        return values * size
    if len(values) != size:
        raise ValueError(
            f"Size of {name} array should be the same as number for arguments ({size}), got {len(values)}"
        )
    return values


def _as_float_tensor(value) -> torch.Tensor:
    tensor = torch.as_tensor(value)
    if not tensor.is_floating_point():
        tensor = tensor.to(torch.float64)
    return tensor


def _describe_vector(values: Sequence[float], plural: str) -> str:
    if all(v == values[0] for v in values):
        return f"with all {plural} equal to {values[0]:f}"
    return f"with {plural}: " + " ".join(f"{v:f}" for v in values)


class Combination(ABC):
    """
    Shared coefficient handling for both combination variants.

    Args:
        size: Number of inputs (CombineFunction) or tasks (TaskCombineFunction)
        coefficients: c_i, scalar or one per input (default 1.0)
        parameters: Offsets a_i, scalar or one per input (default 0.0)
        powers: p_i, scalar or one per input (default 1.0)
        normalize: Rescale the coefficients so that they sum to one
        output_periodic: Optional (min, max) domain of the result
    """

    def __init__(
        self,
        size: int,
        coefficients: ParameterInput = 1.0,
        parameters: ParameterInput = 0.0,
        powers: ParameterInput = 1.0,
        normalize: bool = False,
        output_periodic: Domain = None,
    ):
        if size <= 0:
            raise ValueError("Combination needs at least one argument")
        self.size = size
        self.coefficients = _expand(coefficients, size, "COEFFICIENTS")
        self.parameters = _expand(parameters, size, "PARAMETERS")
        self.powers = _expand(powers, size, "POWERS")
        self.normalize = normalize
        self.output_periodic = _validate_domain(output_periodic, "the output")

        if normalize:
            total = sum(self.coefficients)
            if total == 0.0:
                raise ValueError("Cannot normalize coefficients that sum to zero")
            self.coefficients = [c / total for c in self.coefficients]

    def _terms(
        self,
        cv: torch.Tensor,
        coefficients: torch.Tensor,
        powers: torch.Tensor,
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        value = coefficients * torch.pow(cv, powers)
        derivative = coefficients * powers * torch.pow(cv, powers - 1.0)
        if not bool(torch.isfinite(value).all()) or not bool(torch.isfinite(derivative).all()):
            raise ValueError(
                "Combination produced a non-finite value or derivative "
                "(negative base with a fractional power, or a negative power at zero)"
            )
        return value, derivative

    def _wrap_output(self, value: torch.Tensor) -> torch.Tensor:
        if self.output_periodic is None:
            return value
        lower, upper = self.output_periodic
        return lower + torch.remainder(value - lower, upper - lower)

    def _vectors(self, like: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        kwargs = dict(dtype=like.dtype, device=like.device)
        return (
            torch.tensor(self.coefficients, **kwargs),
            torch.tensor(self.parameters, **kwargs),
            torch.tensor(self.powers, **kwargs),
        )

    @abstractmethod
    def compute(self, values) -> Tuple[torch.Tensor, torch.Tensor]:
        raise NotImplementedError

    def describe(self) -> List[str]:
        """Setup summary, one line per parameter vector."""
        lines = [
            _describe_vector(self.coefficients, "coefficients"),
            _describe_vector(self.parameters, "parameters"),
            _describe_vector(self.powers, "powers"),
        ]
        if self.normalize:
            lines.append("coefficients normalized to sum to one")
        return lines


class CombineFunction(Combination):
    """
    Combine a small set of named scalar inputs into one output.

    Args:
        arguments: Input names, in order
        periodic: Per-input (min, max) domains; None for non-periodic inputs.
            A single domain (or None) applies to every input.
    """

    def __init__(
        self,
        arguments: Sequence[str],
        coefficients: ParameterInput = 1.0,
        parameters: ParameterInput = 0.0,
        powers: ParameterInput = 1.0,
        normalize: bool = False,
        periodic: Optional[Union[Tuple[float, float], Sequence[Domain]]] = None,
        output_periodic: Domain = None,
    ):
        self.arguments = list(arguments)
        if len(set(self.arguments)) != len(self.arguments):
            raise ValueError(f"Duplicate argument names: {self.arguments}")
        super().__init__(
            len(self.arguments), coefficients, parameters, powers, normalize, output_periodic
        )
        self.periodic = self._expand_domains(periodic)

    def _expand_domains(self, periodic) -> List[Domain]:
        if periodic is None:
            return [None] * self.size
        if len(periodic) == 2 and all(isinstance(v, (int, float)) for v in periodic):
            domain = _validate_domain(periodic, "all arguments")
            return [domain] * self.size
        if len(periodic) != self.size:
            raise ValueError(
                f"Size of PERIODIC array should be the same as number for arguments ({self.size}), got {len(periodic)}"
            )
        return [_validate_domain(d, name) for d, name in zip(periodic, self.arguments)]

    def _stack(self, values) -> torch.Tensor:
        if isinstance(values, Mapping):
            missing = [name for name in self.arguments if name not in values]
            if missing:
                raise ValueError(f"Missing combination arguments: {missing}")
            values = [values[name] for name in self.arguments]
        if isinstance(values, torch.Tensor):
            stacked = values
        else:
            stacked = torch.stack([_as_float_tensor(v) for v in values], dim=-1)
        if stacked.shape[-1] != self.size:
            raise ValueError(f"Expected {self.size} arguments, got {stacked.shape[-1]}")
        return stacked

    def compute(self, values) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Args:
            values: Mapping name -> tensor [...], a sequence of tensors in argument
                order, or a tensor [..., n_arguments]

        Returns:
            value: Combined output [...]
            derivatives: dC/dx_i [..., n_arguments]
        """
        x = self._stack(values)
        coefficients, parameters, powers = self._vectors(x)
        cv = torch.stack(
            [periodic_difference(x[..., i], parameters[i], self.periodic[i]) for i in range(self.size)],
            dim=-1,
        )
        terms, derivatives = self._terms(cv, coefficients, powers)
        return self._wrap_output(terms.sum(dim=-1)), derivatives

    def compute_with_gradients(
        self,
        values,
        gradients: Union[Mapping[str, torch.Tensor], Sequence[torch.Tensor]],
        box_gradients: Optional[Union[Mapping[str, torch.Tensor], Sequence[torch.Tensor]]] = None,
    ) -> Tuple[torch.Tensor, torch.Tensor, Optional[torch.Tensor]]:
        """
        Combine inputs and chain-rule their coordinate and box gradients.

        Args:
            values: As for compute; each input of shape [multiplicity]
            gradients: d(x_i)/d(coords), each [multiplicity, N_atoms, 3]
            box_gradients: Optional d(x_i)/d(box), each [multiplicity, 3, 3]

        Returns:
            value: [multiplicity]
            gradient: [multiplicity, N_atoms, 3]
            box_gradient: [multiplicity, 3, 3], or None without box_gradients
        """
        value, derivatives = self.compute(values)
        gradient = self._chain(derivatives, gradients, "gradients")
        box_gradient = None
        if box_gradients is not None:
            box_gradient = self._chain(derivatives, box_gradients, "box gradients")
        return value, gradient, box_gradient

    def _chain(self, derivatives: torch.Tensor, inputs, what: str) -> torch.Tensor:
        if isinstance(inputs, Mapping):
            inputs = [inputs[name] for name in self.arguments]
        if len(inputs) != self.size:
            raise ValueError(f"Expected {self.size} {what}, got {len(inputs)}")
        return sum(derivatives[..., i, None, None] * inputs[i] for i in range(self.size))


class TaskCombineFunction(Combination):
    """
    Apply the same combination independently to many tasks of one input.

    Task t computes c_t * (x_t - a_t)^{p_t}. Used to transform every segment
    value of a multi-valued quantity without one input per segment.

    Args:
        n_tasks: Number of tasks (length of the input vector)
        periodic: Shared (min, max) domain of the input, or None
    """

    def __init__(
        self,
        n_tasks: int,
        coefficients: ParameterInput = 1.0,
        parameters: ParameterInput = 0.0,
        powers: ParameterInput = 1.0,
        normalize: bool = False,
        periodic: Domain = None,
        output_periodic: Domain = None,
    ):
        super().__init__(n_tasks, coefficients, parameters, powers, normalize, output_periodic)
        self.periodic = _validate_domain(periodic, "the input")

    @property
    def n_tasks(self) -> int:
        return self.size

    def compute(self, values: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Args:
            values: [..., n_tasks]

        Returns:
            value: Per-task outputs [..., n_tasks]
            derivatives: d(output_t)/d(x_t) [..., n_tasks]
        """
        x = _as_float_tensor(values)
        if x.shape[-1] != self.size:
            raise ValueError(f"Expected {self.size} tasks, got {x.shape[-1]}")
        coefficients, parameters, powers = self._vectors(x)
        cv = periodic_difference(x, parameters, self.periodic)
        terms, derivatives = self._terms(cv, coefficients, powers)
        return self._wrap_output(terms), derivatives


def create_combination(
    arguments: Optional[Sequence[str]] = None,
    n_tasks: Optional[int] = None,
    **kwargs,
) -> Combination:
    """Build a CombineFunction for named arguments, or a TaskCombineFunction for n_tasks."""
    if (arguments is None) == (n_tasks is None):
        raise ValueError("Specify exactly one of 'arguments' or 'n_tasks'")
    if arguments is not None:
        return CombineFunction(arguments, **kwargs)
    return TaskCombineFunction(n_tasks, **kwargs)

