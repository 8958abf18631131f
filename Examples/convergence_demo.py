# convergence_demo.py
import datetime
import numpy as np
import matplotlib.pyplot as plt
import time as timer
import traceback

# Import necessary components directly from the srgmfit package
from srgmfit import (
    DefectDataset,
    FitSettings,
    MultiStartSettings,
    fit_growth_model,
    fit_all_models,
    get_best_model,
    get_model,
    rank_models,
    refit_from,
    compare_optimizers,
    create_loss,
)

# --- 1. Generate Synthetic Data ---
true_params = {'a': 180.0, 'b': 0.12} # Delayed S-shaped ground truth

def generate_data(n_days=35, seed=7):
    """Daily found/fixed counts drawn from a delayed S-shaped NHPP, plus executed test cases."""
    rng = np.random.default_rng(seed)
    t = np.arange(0, n_days + 1, dtype=float)
    bt = true_params['b'] * t
    m = true_params['a'] * (1 - (1 + bt) * np.exp(-bt))
    found = rng.poisson(np.diff(m))
    # Roughly 85% of found defects get fixed, with a one-day lag
    fixed = rng.binomial(np.concatenate(([0], found[:-1])), 0.85)
    executed = rng.poisson(40 * np.exp(-((t[1:] - 15) / 12) ** 2) + 5)
    return DefectDataset.from_daily_counts(found, fixed=fixed, effort=executed, start_date=datetime.date(2024, 4, 1))


if __name__ == '__main__':
    dataset = generate_data()
    print(f"Generated {dataset.n_points} days, {dataset.total_found:.0f} defects found "
          f"(true total {true_params['a']:.0f}).")

    # --- Optimizer Comparison on a single model ---
    print("\n--- Comparing optimizers on the delayed S-shaped model ---")
    model = get_model("delayed_s")
    loss = create_loss("sse", model)
    lower, upper = model.bounds(dataset.time, dataset.cumulative_found)
    initial = model.initial_parameters(dataset.time, dataset.cumulative_found)
    comparison = compare_optimizers(lambda p: loss.evaluate(model, dataset, p), lower, upper, initial, seed=1)
    for row in comparison.summary_rows():
        print(f"  {row['algorithm']:<22} SSE={row['objective']:>12.4f}  evals={row['evaluations']:>6}  "
              f"{row['elapsed_ms']:>8.1f} ms  {'ok' if row['success'] else row['message']}")

    # --- Fit all models ---
    settings = FitSettings(seed=42, holdout=5, multistart=MultiStartSettings(n_starts=6))
    print("\n--- Fitting every registered model (DE, SSE, 5-day holdout) ---")
    start_time = timer.time()
    results = fit_all_models(dataset, settings=settings, verbose=True)
    print(f"Fitting completed in {timer.time() - start_time:.2f} seconds.")

    failed = [r for r in results if not r.success]
    for res in failed:
        print(f"  {res.model_name}: FAILED ({res.message})")

    ranked = rank_models(results)
    print("\n--- Model Ranking ---")
    for item in ranked[:10]:
        print(f"  Rank {item['rank']:>2}: {item['model_name']:<28} {item['criterion']}={item['score']:.2f}  "
              f"dAIC={item['delta_aic']:.2f}  R²={item['r_squared']:.4f}  total={item['estimated_total']:.1f}")

    best = get_best_model(results)
    if best is None:
        print("No model produced a valid selection criterion.")
        raise SystemExit(1)

    print(f"\n--- Best model: {best.model_name} ---")
    for name, value in best.parameters.items():
        print(f"  {name:<10} = {value:.4f}")
    if best.holdout is not None:
        print(f"  Holdout: MAE={best.holdout.mae:.2f}, MAPE={best.holdout.mape:.1f}%")
    for label, prediction in best.convergence_predictions.items():
        if prediction.already_reached:
            print(f"  {label:>6}: already reached")
        elif prediction.predicted_time is None:
            print(f"  {label:>6}: not reached within the prediction horizon")
        else:
            print(f"  {label:>6}: day {prediction.predicted_time:.1f} ({prediction.predicted_date}), "
                  f"{prediction.remaining_time:.1f} days from now")
    for message in best.warnings:
        print(f"  Warning: {message}")

    # --- Multi-start and MLE on the best model ---
    print("\n--- Re-fitting the best model with Multi-Start and MLE ---")
    try:
        mle_fit = fit_growth_model(best.model_name, dataset, optimizer="multistart", loss="mle", settings=settings)
        print(f"  {mle_fit.optimizer_used}: success={mle_fit.success}, lnL={mle_fit.log_likelihood}, "
              f"total={mle_fit.estimated_total}")
        warm = refit_from(best.model_name, dataset, best.parameter_vector, seed=3)
        print(f"  Warm start: SSE {best.sse:.3f} -> {warm.sse:.3f} with {warm.function_evaluations} evaluations")
    except Exception as e:
        print(f"Re-fit failed: {e}")
        traceback.print_exc()

    # --- Plotting ---
    try:
        horizon = np.linspace(0, dataset.time[-1] * 2, 300)
        plt.figure(figsize=(10, 6))
        plt.plot(dataset.time, dataset.cumulative_found, 'ko', markersize=4, label='Observed (found)')
        if "corrected" in dataset.secondary:
            plt.plot(dataset.time, dataset.secondary["corrected"], 'kx', markersize=4, label='Observed (fixed)')
        for item in ranked[:3]:
            res = item['result']
            curve = get_model(res.model_name)
            plt.plot(horizon, curve.evaluate(horizon, res.parameter_vector), '-', linewidth=2,
                     label=f"{res.model_name} (total {res.estimated_total:.0f})")
        plt.axvline(dataset.time[-1] - settings.holdout + 0.5, color='grey', linestyle=':', label='Holdout start')
        plt.xlabel("Day")
        plt.ylabel("Cumulative defects")
        plt.title("Defect growth: top-ranked models")
        plt.legend(fontsize='small')
        plt.grid(True)
        plt.tight_layout()
        plt.savefig("convergence_fit.png")
        print("\nSaved fit plot to convergence_fit.png")
        plt.close()
    except Exception as e:
        print(f"Plotting failed: {e}")
        traceback.print_exc()
