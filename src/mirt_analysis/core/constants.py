"""Constants shared by the data layer and the estimation engine."""

# Sentinel used for unobserved responses in every response matrix.
MISSING_VALUE = -1

# Floor applied to category probabilities before taking logs.
PROBABILITY_FLOOR = 1e-16
