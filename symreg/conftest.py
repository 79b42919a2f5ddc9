"""pytest initialization."""
import warnings

import numpy as np

# Legacy print options keep array reprs in doctests and assertion messages
# stable across numpy versions
np.set_printoptions(legacy='1.13')

warnings.simplefilter(action="default", category=FutureWarning)
# StageSupersededWarning must be seen by every test checking for it, not only
# the first one issuing it from a given line
warnings.simplefilter("always", category=UserWarning)

# Helpers that pytest must not collect as tests
collect_ignore = ["testing/decorators.py"]
