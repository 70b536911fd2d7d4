"""
Main entry point for the ttbar dilepton analysis.

Reads preselected lepton trees, selects in each event the best
opposite-charge e-mu, e-e and mu-mu pairs, and fills dilepton
histograms (m_ll, pair pT, lepton kinematics) per channel.

Supports serial execution, local multi-process parallelism via
ProcessPoolExecutor, and a local Dask cluster.
"""

import argparse
import glob
import os
import time
import multiprocessing
from concurrent.futures import ProcessPoolExecutor, as_completed

import yaml
import awkward as ak
import numpy as np
import matplotlib.pyplot as plt
from hist import Hist
import hist

from src.analysis.io import DEFAULT_TREE, event_records, load_events
from src.analysis.physics import dilepton_kinematics
from src.analysis.selection import (
    SELECTORS,
    DileptonSelection,
    electron_quality_mask,
    muon_quality_mask,
)


CHANNELS = ("ee", "emu", "mumu")

# Minimum number of good (electrons, muons) needed to form a pair
MIN_GOOD_LEPTONS = {
    "ee": (2, 0),
    "emu": (1, 1),
    "mumu": (0, 2),
}

DEFAULT_BINNING = {
    "mll": {"nbins": 60, "min": 0.0, "max": 300.0},
    "pt_ll": {"nbins": 50, "min": 0.0, "max": 250.0},
    "pt_sum": {"nbins": 50, "min": 0.0, "max": 500.0},
    "lep_pt": {"nbins": 50, "min": 0.0, "max": 250.0},
    "lep_eta": {"nbins": 48, "min": -2.4, "max": 2.4},
}

LABELS = {
    "mll": r"$m_{\ell\ell}\,\mathrm{[GeV]}$",
    "pt_ll": r"$p_T^{\ell\ell}\,\mathrm{[GeV]}$",
    "pt_sum": r"$p_T^{\ell^-} + p_T^{\ell^+}\,\mathrm{[GeV]}$",
    "lep_pt": r"Lepton $p_T$ [GeV]",
    "lep_eta": r"Lepton $\eta$",
}


# Argument parsing and config loading
def parse_args():
    parser = argparse.ArgumentParser(
        description="ttbar dilepton selection over multiple input files."
    )
    parser.add_argument(
        "--config",
        default="config/config.yaml",
        help="Path to YAML configuration file.",
    )
    parser.add_argument(
        "--n-workers",
        type=int,
        default=1,
        help="Number of worker processes for parallel file processing.",
    )
    parser.add_argument(
        "--executor",
        choices=["futures", "dask"],
        default=None,
        help="Parallel backend (overrides the 'executor' config key).",
    )
    return parser.parse_args()


def load_config(path):
    with open(path) as f:
        return yaml.safe_load(f)


def make_histograms(config):
    """
    One histogram per observable, each with a channel category axis.
    Binning comes from config['hist'], falling back to DEFAULT_BINNING.
    """
    hist_cfg = config.get("hist", {})
    hists = {}
    for name, default in DEFAULT_BINNING.items():
        binning = {**default, **hist_cfg.get(name, {})}
        hists[name] = Hist(
            hist.axis.StrCategory(list(CHANNELS), name="channel", label="Channel"),
            hist.axis.Regular(
                binning["nbins"], binning["min"], binning["max"],
                name=name, label=LABELS[name],
            ),
        )
    return hists


def select_event(event, channels):
    """
    Run the pair selection of each channel on one event.

    Returns {channel: DileptonSelection} for the channels in which a
    pair was selected.
    """
    selected = {}
    for channel in channels:
        result = DileptonSelection()
        if SELECTORS[channel](event, result):
            selected[channel] = result
    return selected


def _channels_possible(channels, n_el, n_mu):
    return [
        ch for ch in channels
        if n_el >= MIN_GOOD_LEPTONS[ch][0] and n_mu >= MIN_GOOD_LEPTONS[ch][1]
    ]


# Per-file analysis
def process_file(filename, config):
    """
    Per-file dilepton selection.

    Steps:
      1. Load the lepton branches.
      2. Count good electrons and muons per event (columnar cuts).
      3. Skip events that cannot form a pair in any channel.
      4. Select the best pair per channel in the remaining events.
      5. Fill the dilepton histograms.
    """

    # 1) Load events
    arrays = load_events(
        filename,
        tree_name=config.get("tree_name", DEFAULT_TREE),
        entry_stop=config.get("max_events"),
    )

    channels = config.get("channels", list(CHANNELS))
    hists = make_histograms(config)
    n_selected = {ch: 0 for ch in channels}

    # If the file is empty, return empty structures
    if len(arrays) == 0:
        return hists, {"filename": filename, "n_events": 0, "n_selected": n_selected}

    # 2) Good-lepton multiplicities
    n_good_el = ak.to_numpy(ak.sum(electron_quality_mask(arrays), axis=1))
    n_good_mu = ak.to_numpy(ak.sum(muon_quality_mask(arrays), axis=1))

    values = {name: {ch: [] for ch in channels} for name in hists}

    # 3) + 4) Event loop
    for i, event in enumerate(event_records(arrays)):
        candidates = _channels_possible(channels, n_good_el[i], n_good_mu[i])
        if not candidates:
            continue
        for channel, result in select_event(event, candidates).items():
            n_selected[channel] += 1
            kin = dilepton_kinematics(result.lep_minus, result.lep_plus)
            values["mll"][channel].append(kin["mll"])
            values["pt_ll"][channel].append(kin["pt_ll"])
            values["pt_sum"][channel].append(kin["pt_sum"])
            values["lep_pt"][channel].extend([kin["lep_minus_pt"], kin["lep_plus_pt"]])
            values["lep_eta"][channel].extend([kin["lep_minus_eta"], kin["lep_plus_eta"]])

    # 5) Fill histograms
    for name, h in hists.items():
        for channel, vals in values[name].items():
            if vals:
                h.fill(channel=[channel] * len(vals), **{name: np.asarray(vals, dtype=float)})

    info = {
        "filename": filename,
        "n_events": len(arrays),
        "n_selected": n_selected,
    }
    return hists, info


def safe_process_file(fname, config):
    """
    Wrapper so that a bad file doesn't kill the whole job.
    """
    try:
        return process_file(fname, config)
    except Exception as e:
        print(f"[WARN] Error in file {fname}: {e}")
        return None


def run_files(files, config, n_workers=1, executor="futures"):
    """
    Process all files and return the list of successful (hists, info).
    """
    results = []

    if executor == "dask":
        from src.distributed.executor import compute_tasks, create_local_client, map_files

        client = create_local_client(n_workers=n_workers)
        try:
            tasks = map_files(client, files, safe_process_file, config)
            outs = compute_tasks(client, tasks)
        finally:
            client.close()
        for i, (fname, out) in enumerate(zip(files, outs), start=1):
            if out is not None:
                results.append(out)
            print(f"[{i}/{len(files)}] Completed {fname}")
        return results

    # Serial path for N=1: avoids multiprocessing overhead
    if n_workers == 1:
        for i, fname in enumerate(files, start=1):
            out = safe_process_file(fname, config)
            if out is not None:
                results.append(out)
            print(f"[{i}/{len(files)}] Completed {fname}")
        return results

    # Multi-process path
    with ProcessPoolExecutor(max_workers=n_workers) as pool:
        future_to_file = {
            pool.submit(safe_process_file, fname, config): fname
            for fname in files
        }
        for i, future in enumerate(as_completed(future_to_file), start=1):
            fname = future_to_file[future]
            try:
                out = future.result()
            except Exception as e:
                print(f"[ERROR] {fname}: {e}")
                continue
            if out is not None:
                results.append(out)
            print(f"[{i}/{len(files)}] Completed {fname}")
    return results


def merge_results(results):
    """
    Add per-file histograms bin-by-bin and sum the event counts.
    """
    if not results:
        raise RuntimeError("No successful per-file results; nothing to merge.")

    hists_list, infos = zip(*results)

    total_hists = {name: h.copy() for name, h in hists_list[0].items()}
    for hists in hists_list[1:]:
        for name, h in hists.items():
            total_hists[name] += h

    n_events = sum(info["n_events"] for info in infos)
    n_selected = {}
    for info in infos:
        for channel, n in info["n_selected"].items():
            n_selected[channel] = n_selected.get(channel, 0) + n

    return total_hists, {"n_files": len(infos), "n_events": n_events, "n_selected": n_selected}


def save_histograms(total_hists, channels, outdir):
    """
    Save counts and bin edges of each observable and channel as numpy arrays.
    """
    os.makedirs(outdir, exist_ok=True)
    for name, h in total_hists.items():
        edges = h.axes[name].edges
        for channel in channels:
            counts = h[{"channel": hist.loc(channel)}].values()
            np.save(os.path.join(outdir, f"{name}_{channel}_counts.npy"), counts)
            np.save(os.path.join(outdir, f"{name}_{channel}_edges.npy"), edges)


def plot_histogram(h, name, channels, outdir, logy=False):
    """
    Overlay the channels of one observable, with Poisson errors.
    """
    edges = h.axes[name].edges
    centers = 0.5 * (edges[:-1] + edges[1:])

    fig, ax = plt.subplots()
    for channel in channels:
        counts = h[{"channel": hist.loc(channel)}].values()
        ax.step(edges[:-1], counts, where="post", label=channel)
        ax.errorbar(
            centers,
            counts,
            yerr=np.sqrt(counts),
            fmt=".",
            markersize=2,
            linewidth=0.5,
        )
    if logy:
        ax.set_yscale("log")
    ax.set_xlabel(LABELS[name])
    ax.set_ylabel("Events")
    ax.legend(loc="best", frameon=False)
    fig.tight_layout()
    suffix = "_log" if logy else ""
    fig.savefig(os.path.join(outdir, f"{name}{suffix}.png"))
    plt.close(fig)


def main():
    args = parse_args()
    config = load_config(args.config)

    pattern = os.path.join(config["data_dir"], config["file_pattern"])
    files = sorted(glob.glob(pattern))

    if not files:
        raise RuntimeError(f"No input files found for pattern {pattern}")

    print(f"Found {len(files)} input files.")

    channels = config.get("channels", list(CHANNELS))
    unknown = [ch for ch in channels if ch not in SELECTORS]
    if unknown:
        raise RuntimeError(f"Unknown channel(s) in config: {unknown}")

    analysis_cfg = config.get("analysis", {})
    make_plots = analysis_cfg.get("make_plots", True)

    # Decide how many workers to use
    n_workers = config.get("n_workers", args.n_workers)
    max_procs = multiprocessing.cpu_count() or 1
    if n_workers > max_procs:
        print(
            f"[INFO] Requested {n_workers} workers but only {max_procs} cores available; "
            f"using {max_procs}."
        )
        n_workers = max_procs

    executor = args.executor or config.get("executor", "futures")
    print(f"Using {n_workers} worker(s) with the '{executor}' executor.")

    start_time = time.perf_counter()
    results = run_files(files, config, n_workers=n_workers, executor=executor)
    wall_time = time.perf_counter() - start_time

    total_hists, summary = merge_results(results)

    outdir = config["output_dir"]
    save_histograms(total_hists, channels, outdir)

    if make_plots:
        for name in total_hists:
            plot_histogram(total_hists[name], name, channels, outdir)
        plot_histogram(total_hists["mll"], "mll", channels, outdir, logy=True)

    # Final summary
    total_events = summary["n_events"]
    print(f"Processed {summary['n_files']} files.")
    print(f"Total events read: {total_events}")
    for channel in channels:
        n = summary["n_selected"].get(channel, 0)
        frac = n / total_events if total_events > 0 else float("nan")
        print(f"Selected {channel:>4} events: {n} ({frac:.4f})")
    print(f"Total wall time: {wall_time:.2f} s")
    if wall_time > 0:
        rate = total_events / wall_time
        print(f"Average processing rate: {rate:.1f} events/s")
    print(f"Saved outputs to {outdir}")


if __name__ == "__main__":
    main()
