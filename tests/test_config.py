import textwrap

import pytest
import torch

from sscv.data import const
from sscv.data.parse.config import (
    OutputConfig,
    SecondaryStructureConfig,
    TransformConfig,
    assign_output_names,
    parse_atom_range,
    parse_bond_length,
    parse_combine_section,
    parse_secondary_structure_section,
    parse_sscv_section,
    parse_switching,
)
from sscv.data.parse.yaml import parse_sscv_yaml
from sscv.model.potentials.factory import CVSet, create_cv_function, create_secondary_structure


def write_config(tmp_path, text: str):
    path = tmp_path / "sscv.yaml"
    path.write_text(textwrap.dedent(text))
    return path


def test_parse_atom_range():
    assert parse_atom_range("0-4") == [0, 1, 2, 3, 4]
    assert parse_atom_range("0-2, 7, 10-11") == [0, 1, 2, 7, 10, 11]
    assert parse_atom_range([3, 4, 5]) == [3, 4, 5]
    with pytest.raises(ValueError):
        parse_atom_range("5-2")
    with pytest.raises(ValueError):
        parse_atom_range(12)


def test_parse_switching_accepts_aliases():
    config = parse_switching({"R_0": 0.5, "D_0": 0.1, "NN": 6, "m": 10})

    assert (config.r0, config.d0, config.nn, config.mm) == (0.5, 0.1, 6, 10)
    with pytest.raises(ValueError, match="Unknown keys"):
        parse_switching({"cutoff": 1.0})


def test_output_switching_inherits_section_values():
    section = parse_secondary_structure_section(
        {
            "motif": "alpha_plus_cis",
            "chains": ["0-14"],
            "switching": {"r0": 1.2, "nn": 6},
            "outputs": [{"reducer": "sum"}, {"reducer": "min", "switching": {"r0": 0.4}}],
        }
    )

    assert section.outputs[0].switching is None
    assert section.outputs[1].switching.r0 == 0.4
    assert section.outputs[1].switching.nn == 6


def test_output_naming():
    assert assign_output_names([OutputConfig()]) == ["value"]
    assert assign_output_names([OutputConfig(reducer="sum"), OutputConfig(reducer="min")]) == ["lessthan", "min"]
    assert assign_output_names(
        [OutputConfig(reducer="sum"), OutputConfig(reducer="less_than"), OutputConfig(name="best", reducer="max")]
    ) == ["lessthan-1", "lessthan-2", "best"]


def test_section_needs_exactly_one_reference():
    with pytest.raises(ValueError, match="exactly one"):
        parse_secondary_structure_section({"chains": ["0-14"]})
    with pytest.raises(ValueError, match="exactly one"):
        parse_secondary_structure_section(
            {"motif": "alpha_plus_cis", "reference": [[0.0, 0.0, 0.0]] * 5, "chains": ["0-14"]}
        )


def test_section_needs_chains():
    with pytest.raises(ValueError, match="chain"):
        parse_secondary_structure_section({"motif": "alpha_plus_cis"})


def test_unknown_keys_are_rejected():
    with pytest.raises(ValueError, match="Unknown keys"):
        parse_secondary_structure_section({"motif": "alpha_plus_cis", "chains": ["0-14"], "r_0": 0.1})
    with pytest.raises(ValueError, match="Unknown keys"):
        parse_sscv_section({"secondary_structure": [], "restraints": []})


def test_default_labels_and_duplicates():
    config = parse_sscv_section(
        {
            "secondary_structure": [
                {"motif": "alpha_plus_cis", "chains": ["0-14"]},
                {"motif": "c7beta_plus_cis", "chains": ["0-14"]},
            ]
        }
    )
    assert [c.label for c in config.secondary_structure] == ["ss", "ss1"]

    with pytest.raises(ValueError, match="unique"):
        parse_sscv_section(
            {
                "secondary_structure": [
                    {"label": "a", "motif": "alpha_plus_cis", "chains": ["0-14"]},
                    {"label": "a", "motif": "c7beta_plus_cis", "chains": ["0-14"]},
                ]
            }
        )


def test_combine_section_periodic_forms():
    shared = parse_combine_section({"arguments": ["a", "b"], "periodic": [-3.0, 3.0]})
    assert shared.periodic == [(-3.0, 3.0), (-3.0, 3.0)]

    mixed = parse_combine_section({"arguments": ["a", "b"], "periodic": ["no", [0.0, 1.0]]})
    assert mixed.periodic == [None, (0.0, 1.0)]

    with pytest.raises(ValueError, match="periodic"):
        parse_combine_section({"arguments": ["a"], "periodic": [[0.0]]})


def test_empty_yaml_is_rejected(tmp_path):
    path = write_config(tmp_path, "")
    with pytest.raises(ValueError, match="empty"):
        parse_sscv_yaml(path)


def test_yaml_to_cv_set(tmp_path, template):
    path = write_config(
        tmp_path,
        """
        secondary_structure:
          - label: helix
            motif: alpha_plus_cis
            chains: ["0-14", "15-29"]
            metric: optimal
            outputs:
              - reducer: sum
              - reducer: max
                beta: 20.0
        combine:
          - label: total
            arguments: [helix.lessthan, helix.max]
            coefficients: [1.0, 2.0]
        """,
    )
    config = parse_sscv_yaml(path)
    cv_set = CVSet(config)

    assert cv_set.output_names == ["helix.lessthan", "helix.max", "total"]

    coords = torch.cat([template, template * 20.0 + 50.0], dim=0)
    results = cv_set.compute(coords)

    count = results["helix.lessthan"]
    soft_max = results["helix.max"]
    total = results["total"]
    assert float(count.value) == pytest.approx(1.0, abs=1e-3)
    torch.testing.assert_close(total.value, count.value + 2.0 * soft_max.value)
    torch.testing.assert_close(total.gradient, count.gradient + 2.0 * soft_max.gradient)
    torch.testing.assert_close(total.box_gradient, count.box_gradient + 2.0 * soft_max.box_gradient)


def test_cv_set_combination_gradient_matches_finite_difference(noisy_chain, finite_difference):
    config = parse_sscv_section(
        {
            "secondary_structure": [
                {
                    "label": "helix",
                    "motif": "alpha_plus_cis",
                    "chains": ["0-24"],
                    "switching": {"r0": 1.5},
                    "outputs": [{"reducer": "sum"}, {"reducer": "max", "beta": 5.0}],
                }
            ],
            "combine": [
                {
                    "label": "total",
                    "arguments": ["helix.lessthan", "helix.max"],
                    "coefficients": [1.0, 0.5],
                    "parameters": [-0.5, -0.25],
                    "powers": [2.0, 1.5],
                }
            ],
        }
    )
    cv_set = CVSet(config)

    results = cv_set.compute(noisy_chain)
    count, soft_max, total = results["helix.lessthan"], results["helix.max"], results["total"]
    expected = (count.value + 0.5) ** 2 + 0.5 * (soft_max.value + 0.25) ** 1.5
    torch.testing.assert_close(total.value, expected)

    numeric = finite_difference(lambda x: cv_set.compute(x)["total"].value, noisy_chain.clone())
    torch.testing.assert_close(total.gradient, numeric, rtol=1e-5, atol=1e-8)

    # Box derivative follows the same chain rule as the coordinate gradient
    expected_box = 2.0 * (count.value + 0.5) * count.box_gradient + 0.75 * (
        soft_max.value + 0.25
    ) ** 0.5 * soft_max.box_gradient
    torch.testing.assert_close(total.box_gradient, expected_box)


def test_output_transform_is_parsed_and_built():
    section = {
        "motif": "alpha_plus_cis",
        "chains": ["0-24"],
        "outputs": [
            {"name": "plain"},
            {"name": "squared", "transform": {"parameters": 0.1, "powers": [2.0, 2.0, 2.0]}},
        ],
    }
    config = parse_secondary_structure_section(section)

    assert config.outputs[0].transform is None
    assert config.outputs[1].transform == TransformConfig(coefficients=[1.0], parameters=[0.1], powers=[2.0, 2.0, 2.0])

    cv = create_secondary_structure(config)
    assert cv.outputs[1].transform.powers == (2.0, 2.0, 2.0)

    with pytest.raises(ValueError, match="Unknown keys in 'transform'"):
        parse_secondary_structure_section(
            {"motif": "alpha_plus_cis", "chains": ["0-14"], "outputs": [{"transform": {"power": 2.0}}]}
        )
    with pytest.raises(ValueError, match="mapping"):
        parse_secondary_structure_section(
            {"motif": "alpha_plus_cis", "chains": ["0-14"], "outputs": [{"transform": 2.0}]}
        )


def test_bond_length_covalent_preset():
    assert parse_bond_length(None) == 0.0
    assert parse_bond_length(False) == 0.0
    assert parse_bond_length("no") == 0.0
    assert parse_bond_length(1.2) == 1.2
    assert parse_bond_length(True) == const.covalent_bond_length
    assert parse_bond_length("covalent", reference_scale=0.1) == pytest.approx(0.1 * const.covalent_bond_length)
    with pytest.raises(ValueError, match="bond_length"):
        parse_bond_length("bonded")

    config = parse_secondary_structure_section(
        {"motif": "alpha_plus_cis", "chains": ["0-14"], "bond_length": "covalent", "reference_scale": 0.1}
    )
    assert config.bond_length == pytest.approx(0.17)
    assert create_secondary_structure(config).bond_length == pytest.approx(0.17)


def test_combination_of_unknown_output_is_rejected():
    config = parse_sscv_section(
        {
            "secondary_structure": [{"label": "helix", "motif": "alpha_plus_cis", "chains": ["0-14"]}],
            "combine": [{"label": "total", "arguments": ["helix.min"]}],
        }
    )
    with pytest.raises(ValueError, match="unknown arguments"):
        CVSet(config)


def test_section_metric_applies_without_outputs(template):
    config = SecondaryStructureConfig(motif="alpha_plus_cis", chains=[list(range(15))], metric="optimal")
    cv = create_secondary_structure(config)

    assert cv.output_names == ["value"]
    assert cv.outputs[0].metric == "optimal"


def test_cv_function_signature(template):
    config = parse_secondary_structure_section(
        {"motif": "alpha_plus_cis", "chains": ["0-14"], "switching": {"r0": 1.5}}
    )
    cv_function = create_cv_function(config)

    value, gradient = cv_function(template + 0.1, {"box": None}, step=0)
    assert float(value) == pytest.approx(1.0)
    assert gradient.shape == (15, 3)

    value, _ = cv_function(template.unsqueeze(0), None)
    assert value.shape == (1,)

    with pytest.raises(ValueError, match="Unknown output"):
        create_cv_function(config, output="min")
