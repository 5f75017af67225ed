import json
from pathlib import Path
from typing import Optional

import click
import numpy as np
import torch
import yaml

from sscv.data.motifs import get_reference_structure, list_motifs
from sscv.data.parse.yaml import parse_sscv_yaml
from sscv.model.potentials.factory import CVSet


def load_coordinates(path: Path) -> torch.Tensor:
    """Load [N_atoms, 3] or [multiplicity, N_atoms, 3] coordinates from .npy or text."""
    if path.suffix == ".npy":
        array = np.load(path)
    else:
        array = np.loadtxt(path, ndmin=2)
    array = np.asarray(array, dtype=np.float64)
    if array.ndim not in (2, 3) or array.shape[-1] != 3:
        msg = f"Coordinates in {path} must have shape [N, 3] or [M, N, 3], got {array.shape}."
        raise click.BadParameter(msg)
    return torch.from_numpy(array)


def load_box(box: Optional[str]) -> Optional[torch.Tensor]:
    """Parse '--box' as 3 lengths or 9 cell-matrix entries, comma separated."""
    if box is None:
        return None
    values = [float(v) for v in box.split(",")]
    if len(values) == 3:
        return torch.tensor(values, dtype=torch.float64)
    if len(values) == 9:
        return torch.tensor(values, dtype=torch.float64).reshape(3, 3)
    msg = f"--box needs 3 or 9 comma-separated values, got {len(values)}."
    raise click.BadParameter(msg)


@click.group()
def cli() -> None:
    """Secondary-structure collective variables."""
    return


@cli.command()
def motifs() -> None:
    """List the registered reference motifs."""
    for name in list_motifs():
        template = get_reference_structure(name)
        click.echo(f"{name}\t{template.n_atoms} atoms\t{template.n_residues} residues")


@cli.command()
@click.argument("config", type=click.Path(exists=True))
@click.argument("coords", type=click.Path(exists=True))
@click.option(
    "--box",
    type=str,
    help="Periodic box as 'lx,ly,lz' or nine comma-separated cell matrix entries (row vectors).",
    default=None,
)
@click.option(
    "--step",
    type=int,
    help="Simulation step, used for the negligible-segment refresh. Default is 0.",
    default=0,
)
@click.option(
    "--gradients",
    is_flag=True,
    help="Include the full gradient arrays in the output.",
)
def evaluate(
    config: str,
    coords: str,
    box: Optional[str] = None,
    step: int = 0,
    gradients: bool = False,
) -> None:
    """Evaluate all CVs in CONFIG for the coordinates in COORDS and print JSON."""
    try:
        cv_set = CVSet(parse_sscv_yaml(Path(config)))
        positions = load_coordinates(Path(coords))
        results = cv_set.compute(positions, box=load_box(box), step=step)
    except (ValueError, yaml.YAMLError) as e:
        raise click.ClickException(str(e)) from e

    report = {}
    for name, result in results.items():
        entry = {
            "value": result.value.tolist(),
            "gradient_norm": torch.linalg.norm(result.gradient, dim=(-2, -1)).tolist(),
            "box_gradient": result.box_gradient.tolist(),
        }
        if gradients:
            entry["gradient"] = result.gradient.tolist()
        report[name] = entry
    click.echo(json.dumps(report, indent=2))


if __name__ == "__main__":
    cli()
