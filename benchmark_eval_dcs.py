from __future__ import annotations

import logging
import os

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import pandas as pd
from river import tree
from river.datasets import synth

from Arff_to_river_stream import arff_to_river_stream
from ChunkDCS import KNORAE, KNORAU, NO_SEL, ChunkDCSClassifier
from Prequential_evaluation_proba import prequential_evaluation_proba
from Save_stream_to_arff import save_stream_to_arff

logger = logging.getLogger(__name__)

VOTING_METHODS = (NO_SEL, KNORAE, KNORAU)

# name -> generator used when the ARFF file is not on disk
SYNTHETIC_STREAMS = {
    "AGR_a.arff": lambda: synth.Agrawal(classification_function=0, seed=42),
    "SEA_a.arff": lambda: synth.SEA(variant=0, seed=42),
    "HYPER.arff": lambda: synth.Hyperplane(seed=42, n_features=10, mag_change=0.001),
    "RBF_m.arff": lambda: synth.RandomRBFDrift(seed_model=42, seed_sample=42, n_classes=4, n_features=10, change_speed=0.0001),
}


def run_evaluation(arff_file_path: str, output_dir: str, voting_method: str = NO_SEL,
                   n_models: int = 10, chunk_size: int = 500, n_jobs: int = 4,
                   bagging: bool = True, window_size: int = 1000,
                   max_instances: int | None = None, progress_bar: bool = True,
                   seed: int = 42) -> pd.DataFrame:
    """
    Run a label-aware prequential evaluation of ``ChunkDCSClassifier`` on one ARFF file,
    save its windowed metrics (CSV and plot) and return the cumulative metrics.

    Parameters:
    - arff_file_path: Path to the .arff data file.
    - output_dir: Directory for the window CSV and the accuracy plot.
    - voting_method: NO_SEL, KNORAE or KNORAU.
    - n_models, chunk_size, n_jobs, bagging, seed: ensemble configuration.
    - window_size: Size of the windows for windowed metrics.
    - max_instances: Maximum number of instances to process.
    - progress_bar: Show a progress bar if True.

    Returns:
    - One-row DataFrame with the cumulative metrics of this run.
    """
    logger.info("Processing stream %s with %s", arff_file_path, voting_method)
    base_name = os.path.splitext(os.path.basename(arff_file_path))[0]

    model = ChunkDCSClassifier(
        model=tree.HoeffdingTreeClassifier(grace_period=50, delta=0.01),
        n_models=n_models,
        chunk_size=chunk_size,
        n_jobs=n_jobs,
        bagging=bagging,
        voting_method=voting_method,
        seed=seed,
    )

    results = prequential_evaluation_proba(
        stream=arff_to_river_stream(arff_file_path),
        learner=model,
        max_instances=max_instances,
        window_size=window_size,
        label_aware=True,
        progress_bar=progress_bar,
        stream_name=base_name,
    )

    df_windows = results.metrics_per_window()
    run_name = f"{type(model).__name__}_{voting_method}_{base_name}"
    df_windows.to_csv(os.path.join(output_dir, f"windows_{run_name}.csv"), index=False)
    plot_windowed_accuracy(df_windows, os.path.join(output_dir, f"windows_{run_name}.png"),
                           title=f"{voting_method} on {base_name}")

    return pd.DataFrame([{
        "Learner": type(model).__name__,
        "Voting": voting_method,
        "Stream": base_name,
        "Instances": results.instances_seen,
        "Chunks": model.n_chunks,
        "Ensemble size": model.ensemble_size,
        "Wallclock Time (s)": results.wallclock,
        "CPU Time (s)": results.cpu_time,
        "Cumulative Accuracy": results.accuracy(),
        "Cumulative Kappa": results.kappa(),
    }])


def plot_windowed_accuracy(df_windows: pd.DataFrame, output_file: str, title: str = "Windowed accuracy"):
    plt.figure(figsize=(10, 5))
    plt.plot(df_windows["instances"], df_windows["accuracy"], linewidth=1.5, label="Accuracy")
    plt.plot(df_windows["instances"], df_windows["kappa"], linewidth=1, linestyle="--", label="Kappa")
    plt.xlabel("Instances Seen")
    plt.ylabel("Percent")
    plt.title(title)
    plt.legend()
    plt.grid(True, linestyle="--", alpha=0.6)
    plt.tight_layout()
    plt.savefig(output_file)
    plt.close()


def ensure_dataset(data_dir: str, fname: str, n_instances: int = 20_000) -> str | None:
    file_path = os.path.join(data_dir, fname)
    if os.path.isfile(file_path):
        return file_path
    if fname not in SYNTHETIC_STREAMS:
        logger.warning("File not found and no generator for it: %s", file_path)
        return None
    os.makedirs(data_dir, exist_ok=True)
    return save_stream_to_arff(
        SYNTHETIC_STREAMS[fname]().take(n_instances),
        relation_name=os.path.splitext(fname)[0],
        output_file=file_path,
    )


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    data_dir = "./data"
    output_dir = "./results"
    os.makedirs(output_dir, exist_ok=True)

    all_metrics: list[pd.DataFrame] = []
    for fname in SYNTHETIC_STREAMS:
        file_path = ensure_dataset(data_dir, fname)
        if file_path is None:
            continue
        for voting_method in VOTING_METHODS:
            all_metrics.append(run_evaluation(file_path, output_dir, voting_method=voting_method))

    if all_metrics:
        all_df = pd.concat(all_metrics, ignore_index=True)
        combined_csv = os.path.join(output_dir, "metrics_ChunkDCSClassifier_all_streams.csv")
        all_df.to_csv(combined_csv, index=False)
        print(all_df[["Voting", "Stream", "Cumulative Accuracy", "Cumulative Kappa"]].to_string(index=False))
        print(f"Saved combined cumulative metrics to {combined_csv}")
    else:
        print("No metrics to combine.")
