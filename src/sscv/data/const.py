####################################################################################################
# BACKBONE
####################################################################################################

# Peptoid backbone atoms per residue, in template order
backbone_atoms = ["CLP", "OL", "NL", "CA", "CB1"]
ATOMS_PER_RESIDUE = len(backbone_atoms)

####################################################################################################
# SWITCHING FUNCTION DEFAULTS
####################################################################################################

# Rational switching parameters. r0 is 0.08 nm expressed in Angstrom,
# since templates and coordinates are in Angstrom unless rescaled.
default_r0 = 0.8
default_d0 = 0.0
default_nn = 8
default_mm = 12

# A window contributes less than this once it is past d_max
switching_tolerance = 1.0e-5

####################################################################################################
# DISTANCE METRICS
####################################################################################################

metric_types = ["optimal", "simple", "drmsd"]
metric_aliases = {
    "optimal": "optimal",
    "rmsd": "optimal",
    "kabsch": "optimal",
    "simple": "simple",
    "translation": "simple",
    "drmsd": "drmsd",
    "pairwise": "drmsd",
}

# Preset for `bond_length: covalent`: pairs closer than this in the reference are bonded (Angstrom)
covalent_bond_length = 1.7

# Relative quaternion eigenvalue gap below which the optimal rotation is ambiguous
degeneracy_tolerance = 1.0e-6

####################################################################################################
# REDUCERS
####################################################################################################

reducer_aliases = {
    "sum": "sum",
    "count": "sum",
    "less_than": "sum",
    "lessthan": "sum",
    "mean": "mean",
    "average": "mean",
    "min": "min",
    "alt_min": "alt_min",
    "altmin": "alt_min",
    "max": "max",
    "lowest": "lowest",
    "highest": "highest",
}

# Component labels used when an output is not named explicitly
reducer_labels = {
    "sum": "lessthan",
    "mean": "mean",
    "min": "min",
    "alt_min": "altmin",
    "max": "max",
    "lowest": "lowest",
    "highest": "highest",
}

default_beta = 50.0
