"""
I/O utilities for reading the preselected dilepton ROOT trees with uproot
"""

import uproot
import awkward as ak


DEFAULT_TREE = "Tree"

DEFAULT_BRANCHES = [
    "Nel",
    "elPt",
    "elEta",
    "elPhi",
    "elIso03",
    "elMissHits",
    "Nmu",
    "muPt",
    "muEta",
    "muPhi",
    "muIso03",
    "muHitsValid",
    "muHitsPixel",
    "muDistPV0",
    "muDistPVz",
    "muTrackChi2NDOF",
]


def _find_tree(file, tree_name=DEFAULT_TREE):
    """
    Detect the correct TTree inside the ROOT file.

    Logic:
    1. If ``tree_name`` exists, use it.
    2. Otherwise, search for exactly one TTree.
    3. Otherwise, search for a TTree inside subdirectories.
    """
    # Direct match
    if tree_name in file.keys():
        return file[tree_name]

    # Match with ';1' versioning
    if f"{tree_name};1" in file.keys():
        return file[f"{tree_name};1"]

    # If there is exactly one TTree in the root file:
    tt_keys = [k for k, v in file.classnames().items() if v == "TTree"]
    if len(tt_keys) == 1:
        return file[tt_keys[0]]

    # Search inside directories
    for key in file.keys():
        obj = file[key]
        if not hasattr(obj, "keys"):
            continue
        for subkey in obj.keys():
            full = f"{key}/{subkey}"
            if getattr(file[full], "classname", None) == "TTree":
                return file[full]

    raise RuntimeError(f"No TTree found in file {file.file_path}")


def load_events(filename, branches=None, tree_name=DEFAULT_TREE, entry_stop=None):
    """
    Load selected branches into an Awkward Array.
    Falls back to automatic TTree detection if ``tree_name`` is missing.
    """
    if branches is None:
        branches = DEFAULT_BRANCHES

    with uproot.open(filename) as f:
        tree = _find_tree(f, tree_name)
        arrays = tree.arrays(branches, library="ak", entry_stop=entry_stop)

    return arrays


def event_records(arrays):
    """
    Per-event records (dicts of plain Python lists) for the event loop.
    """
    return ak.to_list(arrays)
