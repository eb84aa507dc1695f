"""Type aliases for the public rrpp signatures."""

import numpy as np
import pandas as pd

# Response or column block: one observation per row.
ArrayLike = np.ndarray | pd.DataFrame | pd.Series

# Integer seed, None (derived from the iteration count) or "random".
SeedLike = int | str | None

# One exchangeability-block label per observation.
BlockLabels = np.ndarray | pd.Series | list
