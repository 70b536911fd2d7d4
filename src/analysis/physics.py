"""
Physics utilities for the ttbar dilepton analysis.

This module builds lepton four-momenta from the (signed) transverse
momentum stored in the input tree and derives the dilepton observables
that are filled into histograms.
"""

import numpy as np
import vector


# Lepton rest masses [GeV]
MASS_EL = 0.000511
MASS_MU = 0.105658


def build_four_vector(pt, eta, phi, mass):
    """
    Construct a four-momentum from (pt, eta, phi, m).

    Parameters
    ----------
    pt : float
        Transverse momentum [GeV]. The input trees store the lepton charge
        as the sign of pt, so only the magnitude is used here.
    eta : float
        Pseudorapidity.
    phi : float
        Azimuthal angle [radians].
    mass : float
        Rest mass [GeV].

    Returns
    -------
    vector.MomentumObject4D
        Supports addition and exposes ``.mass`` and ``.pt``.
    """
    return vector.obj(
        pt=abs(float(pt)),
        eta=float(eta),
        phi=float(phi),
        mass=float(mass),
    )


def electron_four_vector(event, el):
    """Four-momentum of electron candidate ``el`` of the current event."""
    return build_four_vector(event["elPt"][el], event["elEta"][el], event["elPhi"][el], MASS_EL)


def muon_four_vector(event, mu):
    """Four-momentum of muon candidate ``mu`` of the current event."""
    return build_four_vector(event["muPt"][mu], event["muEta"][mu], event["muPhi"][mu], MASS_MU)


def dilepton_kinematics(lep_minus, lep_plus):
    """
    Observables of a selected lepton pair.

    Returns a dict with the invariant mass ``mll``, the transverse
    momentum of the vector sum ``pt_ll``, the scalar sum ``pt_sum`` used
    to rank pairs, the opening angle ``dphi`` in [0, pi] and the
    single-lepton pt/eta.
    """
    dilep = lep_minus + lep_plus
    return {
        "mll": dilep.mass,
        "pt_ll": dilep.pt,
        "pt_sum": lep_minus.pt + lep_plus.pt,
        "dphi": float(np.abs(lep_minus.deltaphi(lep_plus))),
        "lep_minus_pt": lep_minus.pt,
        "lep_plus_pt": lep_plus.pt,
        "lep_minus_eta": lep_minus.eta,
        "lep_plus_eta": lep_plus.eta,
    }
