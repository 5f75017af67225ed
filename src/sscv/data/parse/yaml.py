from pathlib import Path
from typing import Union

import yaml

from sscv.data.parse.config import SSCVConfig, parse_sscv_section


def parse_sscv_yaml(path: Union[str, Path]) -> SSCVConfig:
    """Parse a secondary-structure CV yaml / json.

    The input file should be a yaml file with the following format:

    secondary_structure:
        - label: helix
          motif: alpha_plus_cis
          chains:
            - 0-29
            - [30, 31, 32, 33, 34, 35, 36, 37, 38, 39, 40, 41, 42, 43, 44]
          metric: optimal
          reference_scale: 1.0
          switching:
            r0: 0.8
            d0: 0.0
            nn: 8
            mm: 12
          nl_stride: 10
          outputs:
            - reducer: sum
            - reducer: min
              beta: 50.0
    combine:
        - label: total
          arguments: [helix.lessthan, helix.min]
          coefficients: [1.0, 2.0]
          powers: [1.0, 1.0]
          normalize: false

    Parameters
    ----------
    path : Union[str, Path]
        Path to the YAML input file.

    Returns
    -------
    SSCVConfig
        The parsed configuration.

    """
    path = Path(path)
    with path.open("r") as file:
        data = yaml.safe_load(file)

    if data is None:
        msg = f"Configuration file {path} is empty."
        raise ValueError(msg)

    return parse_sscv_section(data)
