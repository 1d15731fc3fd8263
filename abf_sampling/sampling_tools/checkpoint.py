import os
import json
import numpy as np

from ..exceptions import CheckpointError

CHECKPOINT_KEYS = {
    "type": str,
    "grid": dict,
    "N": list,
    "F": list,
    "iteration": int,
    "restraint_lower": list,
    "restraint_upper": list,
    "restraint_spring_constants": list,
    "restraint_policy": str,
    "minimum_count": int,
    "timestep": float,
    "unit_conversion": float,
    "orthogonalization": bool,
    "bias_directions": list,
    "reduction_interval": int,
    "checkpoint_interval": int,
    "filename": str,
    "wdotp_old": list,
    "F_old": list,
}

# lists of plain numbers
NUMERIC_KEYS = (
    "N",
    "F",
    "restraint_lower",
    "restraint_upper",
    "restraint_spring_constants",
    "wdotp_old",
    "F_old",
)


def _to_builtin(obj):
    """convert numpy containers and scalars for the json module"""
    if isinstance(obj, dict):
        return {k: _to_builtin(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_to_builtin(v) for v in obj]
    if isinstance(obj, np.ndarray):
        return _to_builtin(obj.tolist())
    if isinstance(obj, np.bool_):
        return bool(obj)
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    return obj


def dumps_checkpoint(state: dict) -> str:
    """serialize checkpoint to a canonical JSON string"""
    validate_checkpoint(state)
    return json.dumps(_to_builtin(state), sort_keys=True, indent=1, allow_nan=False)


def write_checkpoint(filename: str, state: dict):
    """write checkpoint, the old file is replaced only after the new one is complete"""
    text = dumps_checkpoint(state)
    tmp = f"{filename}.tmp"
    with open(tmp, "w") as f:
        f.write(text)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, filename)


def read_checkpoint(filename: str) -> dict:
    """read and validate checkpoint

    Raises:
        CheckpointError: missing, corrupted or incomplete checkpoint
    """
    try:
        with open(filename, "r") as f:
            state = json.load(f)
    except OSError as e:
        raise CheckpointError(f" >>> Fatal Error: restart file `{filename}` not found!") from e
    except json.JSONDecodeError as e:
        raise CheckpointError(
            f" >>> Fatal Error: restart file `{filename}` is corrupted: {e}"
        ) from e
    validate_checkpoint(state)
    return state


def _is_number(x) -> bool:
    """finite int or float, bools excluded"""
    if not isinstance(x, (int, float, np.integer, np.floating)) or isinstance(x, (bool, np.bool_)):
        return False
    return bool(np.isfinite(x))


def _check_numbers(key: str, values: list):
    if not all(_is_number(v) for v in values):
        raise CheckpointError(
            f" >>> Fatal Error: Checkpoint entry `{key}` has non-numeric values!"
        )


def validate_checkpoint(state: dict):
    """check presence, types and sizes of checkpoint entries"""
    if not isinstance(state, dict):
        raise CheckpointError(" >>> Fatal Error: Checkpoint has to be a mapping!")

    missing = sorted(set(CHECKPOINT_KEYS) - set(state))
    if missing:
        raise CheckpointError(
            f" >>> Fatal Error: Checkpoint misses entries {', '.join(missing)}!"
        )

    for key, kind in CHECKPOINT_KEYS.items():
        value = state[key]
        if isinstance(value, np.ndarray):
            value = value.tolist()
        if kind is float:
            ok = isinstance(value, (int, float, np.integer, np.floating)) and not isinstance(value, bool)
        elif kind is int:
            ok = isinstance(value, (int, np.integer)) and not isinstance(value, bool)
        elif kind is bool:
            ok = isinstance(value, (bool, np.bool_))
        else:
            ok = isinstance(value, kind)
        if not ok:
            raise CheckpointError(
                f" >>> Fatal Error: Checkpoint entry `{key}` has invalid type {type(value).__name__}!"
            )

    if state["type"] != "ABF":
        raise CheckpointError(f" >>> Fatal Error: Checkpoint of type `{state['type']}` is no ABF checkpoint!")

    grid = state["grid"]
    for key in ("number_points", "lower", "upper", "periodic"):
        if key not in grid:
            raise CheckpointError(f" >>> Fatal Error: Grid of checkpoint misses `{key}`!")
    ncv = len(grid["number_points"])
    for key in NUMERIC_KEYS:
        _check_numbers(key, state[key])
    try:
        nbins = int(np.prod([int(n) + (0 if p else 2) for n, p in zip(grid["number_points"], grid["periodic"])]))
        hist = np.asarray(state["N"], dtype=float)
        force = np.asarray(state["F"], dtype=float)
    except (TypeError, ValueError) as e:
        raise CheckpointError(f" >>> Fatal Error: Invalid histogram in checkpoint: {e}") from e

    if hist.shape != (nbins,) or force.shape != (nbins * ncv,):
        raise CheckpointError(
            f" >>> Fatal Error: Histogram of checkpoint does not match grid with {nbins} bins and {ncv} CVs!"
        )
    if state["iteration"] < 0:
        raise CheckpointError(" >>> Fatal Error: Negative iteration in checkpoint!")
    for key in ("restraint_lower", "restraint_upper", "restraint_spring_constants", "wdotp_old", "F_old"):
        if len(state[key]) != ncv:
            raise CheckpointError(
                f" >>> Fatal Error: Checkpoint entry `{key}` needs {ncv} entries!"
            )
    for d in state["bias_directions"]:
        if not isinstance(d, (list, tuple, np.ndarray)) or len(d) != ncv:
            raise CheckpointError(
                f" >>> Fatal Error: Bias directions of checkpoint need {ncv} components!"
            )
        _check_numbers("bias_directions", d)
