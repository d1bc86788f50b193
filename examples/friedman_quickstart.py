import logging
import numpy as np
from time import perf_counter
from forestvar import forest

logging.basicConfig(level=logging.INFO)

rng = np.random.default_rng(42)
X = rng.uniform(size=(300, 5))
y = (10 * np.sin(np.pi * X[:, 0] * X[:, 1]) + 20 * (X[:, 2] - 0.5) ** 2
     + 10 * X[:, 3] + 5 * X[:, 4] + rng.normal(size=300))
X_new = rng.uniform(size=(50, 5))

t0 = perf_counter()
model = forest(X, y, mode="ustat", n_estimators=5000, n_blocks=25, random_state=42, n_jobs=-1)
print(f"ustat fit: {perf_counter()-t0:.3f} s")

oob = model.var_u(oob=True, separate=True)
print(oob.to_frame().describe())
print(model.var_u(X_new).confidence_interval(0.05).head())

t0 = perf_counter()
boot = forest(X, y, mode="infjack", n_estimators=1000, random_state=42, n_jobs=-1)
print(f"infjack fit: {perf_counter()-t0:.3f} s")
print(boot.var_ij(X_new, calibrate=True).to_frame().head())
