"""
Selection logic for the ttbar dilepton analysis.

This module defines the electron and muon quality cuts and the
selection of the best opposite-charge lepton pair (e-mu, e-e, mu-mu)
of an event.

An ``event`` is any mapping from branch name to per-candidate values
for the event currently being processed (a row of the input tree, e.g.
a dict from ``ak.to_list`` or an awkward Record). The electron and muon
counts ``Nel`` and ``Nmu`` are trusted as loop bounds: candidate indices
beyond them are never read, and indices passed in by the caller must lie
below them. No bounds checking is done here.
"""

from dataclasses import dataclass

import awkward as ak

from src.analysis.physics import electron_four_vector, muon_four_vector


# Lepton quality cuts
LEP_PT_MIN = 20.0
LEP_ETA_MAX = 2.4
EL_ISO_MAX = 0.17
EL_MISS_HITS_MAX = 0
MU_ISO_MAX = 0.20
MU_HITS_VALID_MIN = 12
MU_HITS_PIXEL_MIN = 2
MU_DIST_PV0_MAX = 0.02
MU_DIST_PVZ_MAX = 0.5
MU_CHI2NDOF_MAX = 10.0

# Dilepton mass requirements [GeV]
MLL_MIN = 12.0
Z_VETO_LOW = 76.0
Z_VETO_HIGH = 106.0


@dataclass
class DileptonSelection:
    """
    Best lepton pair found so far in an event.

    The pair selectors update this object in place and leave it untouched
    when no pair passes, so ``max_pt_dilep`` must start at a value no real
    pair can reach (the default ``-inf`` means "nothing selected yet").
    """

    lep_minus: object = None
    lep_plus: object = None
    max_pt_dilep: float = float("-inf")


# Per-candidate quality cuts
def select_electron(event, el):
    """
    Return True if electron candidate ``el`` passes the quality cuts:
    pT >= 20 GeV, |eta| <= 2.4, isolation (dR = 0.3) <= 0.17 and no
    missing hits.
    """
    if abs(event["elPt"][el]) < LEP_PT_MIN:
        return False
    if abs(event["elEta"][el]) > LEP_ETA_MAX:
        return False
    if event["elIso03"][el] > EL_ISO_MAX:
        return False
    if event["elMissHits"][el] > EL_MISS_HITS_MAX:
        return False
    # conversion rejection (elConvDist, elConvDcot) not applied
    return True


def select_muon(event, mu):
    """
    Return True if muon candidate ``mu`` passes the quality cuts.

    Besides pT, |eta| and isolation (dR = 0.3) <= 0.20, the muon needs at
    least 12 valid tracker hits and 2 pixel hits, a transverse impact
    parameter w.r.t. the primary vertex of at most 0.02 cm, a longitudinal
    one of at most 0.5 cm and a global-track chi2/dof of at most 10.
    """
    if abs(event["muPt"][mu]) < LEP_PT_MIN:
        return False
    if abs(event["muEta"][mu]) > LEP_ETA_MAX:
        return False
    if event["muIso03"][mu] > MU_ISO_MAX:
        return False
    if event["muHitsValid"][mu] < MU_HITS_VALID_MIN or event["muHitsPixel"][mu] < MU_HITS_PIXEL_MIN:
        return False
    if (
        event["muDistPV0"][mu] > MU_DIST_PV0_MAX
        or event["muDistPVz"][mu] > MU_DIST_PVZ_MAX
        or event["muTrackChi2NDOF"][mu] > MU_CHI2NDOF_MAX
    ):
        return False
    return True


# Columnar versions of the same cuts, for whole chunks of events
def _in_count(values, counts):
    """Jagged mask of the slots below the per-event candidate count."""
    return ak.local_index(values, axis=1) < counts


def electron_quality_mask(arrays):
    """
    Per-electron mask over all events, identical to ``select_electron``.
    Slots at or beyond ``Nel`` are always False.
    """
    pt = arrays["elPt"]
    mask = (
        (abs(pt) >= LEP_PT_MIN)
        & (abs(arrays["elEta"]) <= LEP_ETA_MAX)
        & (arrays["elIso03"] <= EL_ISO_MAX)
        & (arrays["elMissHits"] <= EL_MISS_HITS_MAX)
    )
    return mask & _in_count(pt, arrays["Nel"])


def muon_quality_mask(arrays):
    """
    Per-muon mask over all events, identical to ``select_muon``.
    Slots at or beyond ``Nmu`` are always False.
    """
    pt = arrays["muPt"]
    mask = (
        (abs(pt) >= LEP_PT_MIN)
        & (abs(arrays["muEta"]) <= LEP_ETA_MAX)
        & (arrays["muIso03"] <= MU_ISO_MAX)
        & (arrays["muHitsValid"] >= MU_HITS_VALID_MIN)
        & (arrays["muHitsPixel"] >= MU_HITS_PIXEL_MIN)
        & (arrays["muDistPV0"] <= MU_DIST_PV0_MAX)
        & (arrays["muDistPVz"] <= MU_DIST_PVZ_MAX)
        & (arrays["muTrackChi2NDOF"] <= MU_CHI2NDOF_MAX)
    )
    return mask & _in_count(pt, arrays["Nmu"])


# Pair selection
def _keep_if_better(result, first_pt, first, second):
    """
    Store (first, second) in ``result`` if its scalar pT sum beats the
    current best. ``first_pt`` is the signed pT of ``first``, which tells
    which of the two leptons is the negative one.
    """
    sum_pt = first.pt + second.pt
    # strict: on equal sums the earlier pair stays
    if not sum_pt > result.max_pt_dilep:
        return False
    result.max_pt_dilep = sum_pt
    if first_pt < 0:
        result.lep_minus, result.lep_plus = first, second
    else:
        result.lep_minus, result.lep_plus = second, first
    return True


def select_dilepton_emu(event, result):
    """
    Select the e-mu pair with the highest scalar pT sum.

    Every (electron, muon) combination of opposite charge where both
    leptons pass the quality cuts and m(e mu) >= 12 GeV is a candidate.
    ``result`` is updated in place; returns True if it was updated.
    """
    updated = False
    for el in range(int(event["Nel"])):
        if not select_electron(event, el):
            continue
        this_el = electron_four_vector(event, el)
        for mu in range(int(event["Nmu"])):
            # opposite charges
            if event["elPt"][el] * event["muPt"][mu] > 0:
                continue
            if not select_muon(event, mu):
                continue
            this_mu = muon_four_vector(event, mu)
            if (this_el + this_mu).mass < MLL_MIN:
                continue
            if _keep_if_better(result, event["elPt"][el], this_el, this_mu):
                updated = True
    return updated


def _select_same_flavor(event, result, n_branch, pt_branch, select_lepton, four_vector):
    """Shared loop of the e-e and mu-mu selections."""
    n_lep = int(event[n_branch])
    pts = event[pt_branch]
    updated = False
    for i in range(n_lep):
        if not select_lepton(event, i):
            continue
        lep1 = four_vector(event, i)
        for j in range(i + 1, n_lep):
            if pts[i] * pts[j] > 0:
                continue
            if not select_lepton(event, j):
                continue
            lep2 = four_vector(event, j)
            mll = (lep1 + lep2).mass
            if mll < MLL_MIN:
                continue
            # Z mass window veto against Drell-Yan
            if Z_VETO_LOW < mll < Z_VETO_HIGH:
                continue
            if _keep_if_better(result, pts[i], lep1, lep2):
                updated = True
    return updated


def select_dilepton_ee(event, result):
    """
    Select the e-e pair with the highest scalar pT sum.

    Same as the e-mu selection, plus a veto of 76 < m(ee) < 106 GeV.
    """
    return _select_same_flavor(event, result, "Nel", "elPt", select_electron, electron_four_vector)


def select_dilepton_mumu(event, result):
    """
    Select the mu-mu pair with the highest scalar pT sum.

    Same as the e-mu selection, plus a veto of 76 < m(mumu) < 106 GeV.
    """
    return _select_same_flavor(event, result, "Nmu", "muPt", select_muon, muon_four_vector)


SELECTORS = {
    "ee": select_dilepton_ee,
    "emu": select_dilepton_emu,
    "mumu": select_dilepton_mumu,
}
