import math

# conversions
J_to_kcal = 1.0 / 4184.0
kJ_to_kcal = 0.239006
atomic_to_kJmol = 2625.499639
DEGREES_per_RADIAN = 180.0 / math.pi

# d(momentum)/dt to force, LAMMPS `units real`:
# gram*Angstrom/(mole*femtosecond^2) -> kcal/(mole*Angstrom)
real_unitconv = 2390.06
# GROMACS and OpenMM units are consistent, no conversion needed
md_unitconv = 1.0

# constants
kB_in_SI = 1.380648e-23
N_A = 6.02214076e23
kB_in_kcalmol = kB_in_SI * N_A * J_to_kcal
kB_in_kJmol = kB_in_SI * N_A / 1000.0
