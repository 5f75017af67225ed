import math

import pytest
import torch

from sscv.model.potentials.combine import (
    CombineFunction,
    TaskCombineFunction,
    create_combination,
    periodic_difference,
)


def f64(*values) -> torch.Tensor:
    return torch.tensor(values, dtype=torch.float64)


def test_defaults_give_a_plain_sum():
    combine = CombineFunction(["a", "b", "c"])
    value, derivatives = combine.compute({"a": f64(1.0), "b": f64(2.0), "c": f64(-0.5)})

    torch.testing.assert_close(value, f64(2.5))
    torch.testing.assert_close(derivatives, f64(1.0, 1.0, 1.0).unsqueeze(0))


def test_normalize_rescales_coefficients():
    combine = CombineFunction(["a", "b"], coefficients=[1.0, 3.0], normalize=True)

    assert combine.coefficients == [0.25, 0.75]
    value, _ = combine.compute([f64(4.0), f64(8.0)])
    torch.testing.assert_close(value, f64(7.0))


def test_normalize_of_zero_sum_is_rejected():
    with pytest.raises(ValueError, match="sum to zero"):
        CombineFunction(["a", "b"], coefficients=[1.0, -1.0], normalize=True)


def test_parameter_length_mismatch_is_rejected():
    with pytest.raises(ValueError, match="COEFFICIENTS"):
        CombineFunction(["a", "b", "c"], coefficients=[1.0, 2.0])
    with pytest.raises(ValueError, match="POWERS"):
        CombineFunction(["a", "b"], powers=[1.0, 2.0, 3.0])


def test_duplicate_arguments_are_rejected():
    with pytest.raises(ValueError, match="Duplicate"):
        CombineFunction(["a", "a"])


def test_power_and_offset():
    # 2 * (3 - 1)^2 = 8, derivative 2 * 2 * (3 - 1) = 8
    combine = CombineFunction(["x"], coefficients=2.0, parameters=1.0, powers=2.0)
    value, derivatives = combine.compute(f64(3.0).unsqueeze(-1))

    torch.testing.assert_close(value, f64(8.0))
    torch.testing.assert_close(derivatives, f64(8.0).unsqueeze(-1))


def test_derivatives_match_finite_difference(finite_difference):
    combine = CombineFunction(
        ["a", "b", "c"], coefficients=[0.5, -2.0, 1.5], parameters=[0.1, 1.0, -0.3], powers=[1.0, 2.0, 3.0]
    )
    x = f64(0.7, 2.2, 0.4)

    _, derivatives = combine.compute(x)
    numeric = finite_difference(lambda v: combine.compute(v)[0], x.clone())

    torch.testing.assert_close(derivatives, numeric, rtol=1e-6, atol=1e-9)


def test_periodic_difference_wraps_across_the_boundary():
    combine = CombineFunction(["phi"], coefficients=3.0, parameters=math.pi - 0.1, periodic=(-math.pi, math.pi))
    value, derivatives = combine.compute(f64(-math.pi + 0.1).unsqueeze(-1))

    torch.testing.assert_close(value, f64(0.6))
    torch.testing.assert_close(derivatives, f64(3.0).unsqueeze(-1))


def test_periodic_difference_range():
    x = torch.linspace(-10.0, 10.0, 101, dtype=torch.float64)
    delta = periodic_difference(x, torch.tensor(0.5, dtype=torch.float64), (0.0, 4.0))

    assert bool((delta >= -2.0).all()) and bool((delta < 2.0).all())
    # Differs from the plain difference by whole periods
    shift = (delta - (x - 0.5)) / 4.0
    torch.testing.assert_close(shift, torch.round(shift), rtol=0, atol=1e-9)


def test_mixed_periodic_arguments():
    combine = CombineFunction(["phi", "d"], periodic=[(-math.pi, math.pi), None], parameters=[math.pi, 0.0])
    value, _ = combine.compute({"phi": f64(-math.pi + 0.5), "d": f64(1.0)})

    torch.testing.assert_close(value, f64(1.5))


def test_invalid_periodic_domain_is_rejected():
    with pytest.raises(ValueError, match="min < max"):
        CombineFunction(["a"], periodic=(1.0, 1.0))


def test_output_is_wrapped_into_its_domain():
    combine = CombineFunction(["a", "b"], output_periodic=(0.0, 1.0))
    value, _ = combine.compute([f64(0.75), f64(0.5)])

    torch.testing.assert_close(value, f64(0.25))


def test_fractional_power_of_negative_base_is_rejected():
    combine = CombineFunction(["a"], powers=0.5)
    with pytest.raises(ValueError, match="non-finite"):
        combine.compute(f64(-1.0).unsqueeze(-1))


def test_missing_argument_is_rejected():
    combine = CombineFunction(["a", "b"])
    with pytest.raises(ValueError, match="Missing"):
        combine.compute({"a": f64(1.0)})


def test_compute_with_gradients_applies_chain_rule():
    combine = CombineFunction(["a", "b"], coefficients=[2.0, 1.0], powers=[1.0, 2.0])
    grad_a = torch.ones(1, 4, 3, dtype=torch.float64)
    grad_b = torch.full((1, 4, 3), 0.5, dtype=torch.float64)

    value, gradient, box_gradient = combine.compute_with_gradients(
        {"a": f64(1.0), "b": f64(3.0)}, {"a": grad_a, "b": grad_b}
    )

    torch.testing.assert_close(value, f64(11.0))
    # 2 * 1 + (2 * 3) * 0.5
    torch.testing.assert_close(gradient, torch.full((1, 4, 3), 5.0, dtype=torch.float64))
    assert box_gradient is None


def test_compute_with_gradients_chains_box_gradient():
    combine = CombineFunction(["a", "b"], coefficients=[2.0, 1.0], powers=[1.0, 2.0])
    gradients = [torch.zeros(1, 4, 3, dtype=torch.float64)] * 2
    box_a = torch.eye(3, dtype=torch.float64).unsqueeze(0)
    box_b = torch.full((1, 3, 3), 2.0, dtype=torch.float64)

    _, _, box_gradient = combine.compute_with_gradients(
        [f64(1.0), f64(3.0)], gradients, box_gradients=[box_a, box_b]
    )

    torch.testing.assert_close(box_gradient, 2.0 * box_a + 6.0 * box_b)

    with pytest.raises(ValueError, match="box gradients"):
        combine.compute_with_gradients([f64(1.0), f64(3.0)], gradients, box_gradients=[box_a])


def test_task_combination_is_elementwise():
    tasks = TaskCombineFunction(3, coefficients=[1.0, 2.0, 3.0], parameters=1.0, powers=2.0)
    values = f64(2.0, 3.0, 0.0).unsqueeze(0)

    value, derivatives = tasks.compute(values)

    assert tasks.n_tasks == 3
    torch.testing.assert_close(value, f64(1.0, 8.0, 3.0).unsqueeze(0))
    torch.testing.assert_close(derivatives, f64(2.0, 8.0, -6.0).unsqueeze(0))


def test_task_combination_rejects_wrong_length():
    with pytest.raises(ValueError, match="tasks"):
        TaskCombineFunction(2).compute(f64(1.0, 2.0, 3.0))


def test_create_combination_needs_exactly_one_shape():
    assert isinstance(create_combination(arguments=["a"]), CombineFunction)
    assert isinstance(create_combination(n_tasks=4, powers=2.0), TaskCombineFunction)
    with pytest.raises(ValueError):
        create_combination()
    with pytest.raises(ValueError):
        create_combination(arguments=["a"], n_tasks=1)


def test_describe_reports_parameters():
    lines = CombineFunction(["a", "b"]).describe()
    assert lines[0] == "with all coefficients equal to 1.000000"
    assert lines[2] == "with all powers equal to 1.000000"

    lines = CombineFunction(["a", "b"], coefficients=[1.0, 3.0], normalize=True).describe()
    assert lines[0] == "with coefficients: 0.250000 0.750000"
    assert lines[-1] == "coefficients normalized to sum to one"
