"""
I/O utilities for loading and saving rater masks and consensus results.

Rater masks come from NPZ archives or NIfTI images; results are written as NPZ.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import nibabel as nib
import numpy as np

from ..data.volumes import AXIAL_COSINES, BinaryVolume

logger = logging.getLogger(__name__)

# Mask keys tried in order when reading a rater archive
DEFAULT_LABEL_KEYS = ["mask.npy", "mask", "label.npy", "label", "segmentation", "seg"]

NIFTI_SUFFIXES = (".nii", ".nii.gz")


def load_npz(path: Union[str, Path]) -> Dict[str, np.ndarray]:
    """
    Read every array of an NPZ archive into memory.

    Args:
        path: Path to NPZ file.

    Returns:
        Mapping of archive key to array, in archive order.

    Raises:
        ValueError: If the archive holds no arrays.
    """
    path = Path(path)
    with np.load(path) as data:
        arrays = {k: data[k] for k in data.files}
    if not arrays:
        raise ValueError(f"No arrays found in {path.name}")
    return arrays


def find_label(
    arrays: Dict[str, np.ndarray],
    key: Optional[str] = None,
    priority_keys: Optional[List[str]] = None,
) -> np.ndarray:
    """
    Pick the mask array out of a loaded archive.

    An explicit key wins; otherwise the first present entry of priority_keys
    (DEFAULT_LABEL_KEYS when not given).

    Raises:
        KeyError: If no candidate key is present.
    """
    candidates = [key] if key is not None else list(priority_keys or DEFAULT_LABEL_KEYS)
    for k in candidates:
        if k in arrays:
            return arrays[k]
    raise KeyError(f"None of {candidates} found. Available: {list(arrays)}")


def save_npz(path: Union[str, Path], arrays: Dict[str, np.ndarray], compressed: bool = True) -> Path:
    """Write arrays to an NPZ archive, creating parent folders."""
    if not arrays:
        raise ValueError("No arrays provided to save")

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    writer = np.savez_compressed if compressed else np.savez
    writer(path, **arrays)
    return path


def load_nifti(path: Union[str, Path]) -> Tuple[np.ndarray, np.ndarray]:
    """Voxel data of a NIfTI image (as stored, no scaling) and its 4x4 affine."""
    nii = nib.load(str(path))
    return np.asanyarray(nii.dataobj), nii.affine


def save_nifti(path: Union[str, Path], mask: np.ndarray, affine: np.ndarray) -> Path:
    """
    Write a binary mask as a uint8 NIfTI image.

    Args:
        path: Output path (.nii or .nii.gz).
        mask: Mask in NIfTI voxel order (i, j, k).
        affine: 4x4 voxel-to-world matrix.

    Returns:
        Path to saved file.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    labels = (np.asarray(mask) > 0).astype(np.uint8)
    nib.save(nib.Nifti1Image(labels, affine), str(path))
    return path


def _is_nifti(path: Path) -> bool:
    return path.name.endswith(NIFTI_SUFFIXES)


def _optional(data, key: str) -> Optional[tuple]:
    if key in data:
        return tuple(np.asarray(data[key], dtype=np.float64).ravel().tolist())
    return None


def _volume_from_npz(path: Path, source: str) -> BinaryVolume:
    arrays = load_npz(path)
    try:
        label = find_label(arrays)
    except KeyError as e:
        raise KeyError(f"No mask in {path.name}: {e.args[0]}") from e

    return BinaryVolume.from_array(
        label,
        positions=_optional(arrays, "positions"),
        spacing=_optional(arrays, "spacing") or (1.0, 1.0),
        cosines=_optional(arrays, "cosines") or AXIAL_COSINES,
        origin=_optional(arrays, "origin") or (0.0, 0.0, 0.0),
        source=source,
    )


def _volume_from_nifti(path: Path, source: str) -> BinaryVolume:
    """
    NIfTI voxel axes (i, j, k) are read as (column, row, slice).

    Spacing, orientation and slice positions come from the affine columns.
    """
    data, affine = load_nifti(path)
    if data.ndim == 2:
        data = data[:, :, np.newaxis]
    if data.ndim != 3:
        raise ValueError(f"Expected 2D or 3D mask in {path.name}, got {data.ndim}D")

    col_axis, row_axis, slice_axis = affine[:3, 0], affine[:3, 1], affine[:3, 2]
    col_spacing = float(np.linalg.norm(col_axis))
    row_spacing = float(np.linalg.norm(row_axis))
    row_direction = col_axis / col_spacing
    column_direction = row_axis / row_spacing

    normal = np.cross(row_direction, column_direction)
    origin = affine[:3, 3]
    positions = [
        float(np.dot(origin + k * slice_axis, normal)) for k in range(data.shape[2])
    ]

    labels = np.transpose(np.asarray(data), (2, 1, 0))
    labels = (labels > 0).astype(np.uint8)

    return BinaryVolume.from_array(
        labels,
        positions=positions,
        spacing=(row_spacing, col_spacing),
        cosines=tuple(row_direction.tolist()) + tuple(column_direction.tolist()),
        origin=tuple(origin.tolist()),
        source=source,
    )


def load_rater_volume(
    path: Union[str, Path],
    source: Optional[str] = None,
) -> BinaryVolume:
    """
    Load one rater's binary volume from NPZ or NIfTI.

    NPZ files hold a (slices, rows, columns) mask under 'mask' or 'label' and
    optionally 'positions', 'spacing' (row, column), 'origin' and 'cosines'.

    Args:
        path: Path to .npz, .nii or .nii.gz file.
        source: Rater identity; defaults to the file name without suffix.

    Returns:
        BinaryVolume instance.

    Raises:
        FileNotFoundError: If the file does not exist.
        KeyError: If an NPZ file has no mask key.
        ValueError: If the file type is not supported.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Rater file not found: {path}")

    if _is_nifti(path):
        volume = _volume_from_nifti(path, source or path.name.split(".nii")[0])
    elif path.suffix == ".npz":
        volume = _volume_from_npz(path, source or path.stem)
    else:
        raise ValueError(f"Unsupported rater file type: {path.name}")

    logger.info(f"Loaded {volume!r} from {path.name}")
    return volume


def save_staple_result(
    path: Union[str, Path],
    result,
    positions: Optional[List[float]] = None,
    save_weights: bool = True,
) -> Path:
    """
    Save a STAPLE result to NPZ.

    The true segmentation is stored under 'label'; sensitivities and
    specificities under 'p' and 'q'.

    Args:
        path: Output path.
        result: StapleResult.
        positions: Slice positions of the master grid.
        save_weights: Also store the per-voxel posterior 'weights'.

    Returns:
        Path to saved file.
    """
    arrays = {
        "label": np.asarray(result.true_segmentation, dtype=np.uint8),
        "p": np.asarray(result.p),
        "q": np.asarray(result.q),
        "prevalence": np.asarray(result.prevalence),
        "iterations": np.asarray(result.iterations),
        "converged": np.asarray(result.converged),
    }
    if save_weights:
        arrays["weights"] = np.asarray(result.weights, dtype=np.float32)
    if positions is not None:
        arrays["positions"] = np.asarray(positions, dtype=np.float64)
    if any(result.sources):
        arrays["sources"] = np.asarray([s or "" for s in result.sources])

    return save_npz(path, arrays)
