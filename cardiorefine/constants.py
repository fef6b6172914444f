"""Numeric defaults shared across the refinement engine."""

# All-pass coefficient margin: coefficients are kept inside [EPS, 1 - EPS].
COEF_MARGIN = 1e-4
# Integer delay bounds (in samples) reachable through coefficient wrapping.
DELAY_MIN = 1
DELAY_MAX = 1000

# 3x3x3 neighbourhood without the centre voxel.
NUM_OFFSETS = 26
# Incoming links per destination state: 26 offsets x 3 source axes.
LINKS_PER_STATE = NUM_OFFSETS * 3

# Adam moment decay rates and denominator guard.
ADAM_BETA1 = 0.9
ADAM_BETA2 = 0.999
ADAM_EPS = 1e-8

# Biot-Savart prefactor pieces (vacuum permeability in T*m/A, output in pT).
VACUUM_PERMEABILITY = 1.25663706212e-6
PICO = 1e12
