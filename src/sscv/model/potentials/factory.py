"""
Factory for creating collective variables from parsed configuration.

This module turns SecondaryStructureConfig / CombineConfig objects into
ContinuousSecondaryStructure and CombineFunction instances, and wraps them in
the (coords, feats, step) -> (value, gradient) CV-function signature.
"""

from typing import Callable, Dict, List, Optional, Tuple

import torch

from sscv.data.parse.config import (
    CombineConfig,
    OutputConfig,
    SecondaryStructureConfig,
    SSCVConfig,
    SwitchingConfig,
    TransformConfig,
)
from sscv.model.potentials.combine import CombineFunction
from sscv.model.potentials.reducers import Reducer
from sscv.model.potentials.secondary_structure import (
    ContinuousSecondaryStructure,
    CVOutput,
    SecondaryStructureOutput,
    WindowTransform,
)
from sscv.model.potentials.switching import RationalSwitchingFunction


def create_switching_function(config: SwitchingConfig) -> RationalSwitchingFunction:
    return RationalSwitchingFunction(
        r0=config.r0,
        d0=config.d0,
        nn=config.nn,
        mm=config.mm,
        tolerance=config.tolerance,
    )


def create_window_transform(config: Optional[TransformConfig]) -> Optional[WindowTransform]:
    if config is None:
        return None
    return WindowTransform(
        coefficients=config.coefficients,
        parameters=config.parameters,
        powers=config.powers,
    )


def create_secondary_structure(config: SecondaryStructureConfig) -> ContinuousSecondaryStructure:
    """
    Build a secondary-structure CV from its configuration.

    Outputs without their own metric or switching parameters inherit the
    section-level ones.
    """
    outputs = []
    for output in config.outputs or [OutputConfig()]:
        switching = output.switching if output.switching is not None else config.switching
        outputs.append(
            SecondaryStructureOutput(
                name=output.name if output.name is not None else "value",
                metric=output.metric if output.metric is not None else config.metric,
                switching=create_switching_function(switching),
                reducer=Reducer(output.reducer, output.beta),
                transform=create_window_transform(output.transform),
            )
        )

    reference = config.motif if config.motif is not None else config.reference
    return ContinuousSecondaryStructure(
        reference=reference,
        chains=config.chains,
        outputs=outputs,
        reference_scale=config.reference_scale,
        bond_length=config.bond_length,
        pbc=config.pbc,
        nl_stride=config.nl_stride,
        degeneracy_tol=config.degeneracy_tol,
        verbose=config.verbose,
    )


def create_combine_function(config: CombineConfig) -> CombineFunction:
    return CombineFunction(
        arguments=config.arguments,
        coefficients=config.coefficients,
        parameters=config.parameters,
        powers=config.powers,
        normalize=config.normalize,
        periodic=config.periodic,
        output_periodic=config.output_periodic,
    )


class CVSet:
    """
    All CVs of one configuration document, evaluated together.

    Secondary-structure outputs are exposed as "<label>.<output>", combinations
    as "<label>". A combination may use any output defined before it.
    """

    def __init__(self, config: SSCVConfig):
        self.secondary_structure: Dict[str, ContinuousSecondaryStructure] = {
            c.label: create_secondary_structure(c) for c in config.secondary_structure
        }
        self.combine: Dict[str, CombineFunction] = {}

        available = [
            f"{label}.{name}"
            for label, cv in self.secondary_structure.items()
            for name in cv.output_names
        ]
        for c in config.combine:
            missing = [a for a in c.arguments if a not in available]
            if missing:
                raise ValueError(
                    f"Combination '{c.label}' uses unknown arguments {missing}. Available: {available}"
                )
            self.combine[c.label] = create_combine_function(c)
            available.append(c.label)

    @property
    def output_names(self) -> List[str]:
        names = [
            f"{label}.{name}"
            for label, cv in self.secondary_structure.items()
            for name in cv.output_names
        ]
        return names + list(self.combine.keys())

    def compute(self, coords: torch.Tensor, box=None, step: Optional[int] = None) -> Dict[str, CVOutput]:
        results: Dict[str, CVOutput] = {}
        for label, cv in self.secondary_structure.items():
            for name, output in cv.compute(coords, box=box, step=step).items():
                results[f"{label}.{name}"] = output

        for label, combination in self.combine.items():
            inputs = [results[a] for a in combination.arguments]
            value, gradient, box_gradient = combination.compute_with_gradients(
                [r.value for r in inputs],
                [r.gradient for r in inputs],
                box_gradients=[r.box_gradient for r in inputs],
            )
            results[label] = CVOutput(value=value, gradient=gradient, box_gradient=box_gradient)
        return results


def create_cv_function(
    config: SecondaryStructureConfig,
    output: Optional[str] = None,
) -> Callable[[torch.Tensor, dict, int], Tuple[torch.Tensor, torch.Tensor]]:
    """
    Create a CV function from configuration.

    Args:
        config: Secondary-structure configuration
        output: Output name to expose; defaults to the first output

    Returns:
        cv_function: Callable (coords, feats, step) -> (cv_value, cv_gradient).
            feats may carry a periodic 'box'.
    """
    cv = create_secondary_structure(config)
    name = output if output is not None else cv.output_names[0]
    if name not in cv.output_names:
        raise ValueError(f"Unknown output '{name}'. Available outputs: {cv.output_names}")

    def cv_function(coords: torch.Tensor, feats: Optional[dict] = None, step: int = 0):
        box = feats.get("box") if feats else None
        result = cv.compute(coords, box=box, step=step)[name]
        return result.value, result.gradient

    return cv_function
