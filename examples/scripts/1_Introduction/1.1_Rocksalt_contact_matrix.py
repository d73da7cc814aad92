"""Contact matrix of a rocksalt crystal with analytic derivatives."""

# /// script
# dependencies = ["ase>=3.23"]
# ///
import logging

import numpy as np
import torch
from ase.build import bulk

import torch_adjmat as ta


logging.basicConfig(level=logging.INFO)

device = torch.device("cuda" if torch.cuda.is_available() else "cpu")
dtype = torch.float64

atoms = bulk("NaCl", "rocksalt", a=5.64).repeat((3, 3, 3))
atoms.rattle(stdev=0.05, seed=0)
system = ta.AtomicSystem.from_ase(atoms, device=device, dtype=dtype)

symbols = np.array(atoms.get_chemical_symbols())
groups = [
    ta.AtomNodes("na", np.flatnonzero(symbols == "Na").tolist()),
    ta.AtomNodes("cl", np.flatnonzero(symbols == "Cl").tolist()),
]

# %%
config = ta.ContactMatrixConfig.from_keywords(
    "CONTACT_MATRIX ATOMS=na,cl WTOL=1e-6 "
    "SWITCH11={RATIONAL R_0=4.0 D_MAX=4.5} "
    "SWITCH12={RATIONAL R_0=2.9 NN=8 MM=16 D_MAX=3.5} "
    "SWITCH22={GAUSSIAN R_0=3.0 D_0=3.5 D_MAX=4.5}"
)
model = config.build(groups)

# Weights only
vessel = model(system, mode=ta.EvaluationMode.WEIGHTS)
pairs, weights = vessel.edge_list()
print(f"Active edges: {pairs.shape[0]} of {model.bookkeeper.n_tasks} pairs")

for type_a, type_b in [(0, 0), (0, 1), (1, 1)]:
    tasks, block_weights = vessel.iter_block(type_a, type_b)
    print(
        f"Types {type_a}-{type_b}: {tasks.shape[0]} pairs within the cutoff, "
        f"total weight {block_weights.sum().item():.3f}"
    )

# %%
# Weights and derivatives of the total weight
system.reset_forces()
vessel = model(system, mode=ta.EvaluationMode.DERIVATIVES)
print(f"Sum of derivatives: {system.forces.sum(dim=0).abs().max().item():.2e}")
print(f"Virial:\n{system.virial}")

coordination = vessel.to_dense().sum(dim=1)
print(f"Mean Na coordination: {coordination[: groups[0].n_nodes].mean().item():.3f}")
