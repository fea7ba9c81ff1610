"""
MODERA Unit and Integration Tests

Run with: pytest test_modera.py -v
"""

# Import MODERA components
import json
import math
import sys
import tempfile
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

sys.path.insert(0, str(Path(__file__).parent))

from MODERA import (
    RANDOM_STATE,
    AggregationError,
    AnalysisSettings,
    AuditLog,
    DegenerateTableError,
    ElasticNetSelector,
    FeatureSchema,
    ForestImportanceSelector,
    InsufficientDataError,
    LassoSelector,
    ModeraError,
    NonConvergenceError,
    SchemaError,
    SeparationError,
    SvmRfeSelector,
    SyntheticTrialGenerator,
    adjusted_effects,
    aggregate,
    build_terms,
    check_folds,
    contingency_table,
    encode_features,
    evaluate,
    fit_moderation_model,
    impute,
    make_folds,
    odds_ratio_from_table,
    partition_groups,
    pool_moderation_models,
    pool_rubin,
    pool_selection_results,
    run_moderation_analysis,
    unadjusted_odds_ratio,
    unadjusted_summary,
    verify_column_types,
    vote_terms,
)


class TestFeatureSchema:
    """Tests for schema declaration and typed preparation."""

    def test_from_dict_round_trip(self, trial):
        """Test schema dictionaries survive a round trip."""
        df, schema_dict = trial
        schema = FeatureSchema.from_dict(schema_dict)
        assert schema.outcome == "abstinent"
        assert schema.type_of("education") == "nominal"
        assert FeatureSchema.from_dict(schema.to_dict()).to_dict() == schema.to_dict()

    def test_missing_key_raises(self):
        """Test a schema without treatment columns is rejected."""
        with pytest.raises(SchemaError):
            FeatureSchema.from_dict({"features": {}, "outcome": "y"})

    def test_unknown_type_raises(self):
        """Test unknown feature types are rejected."""
        with pytest.raises(SchemaError):
            FeatureSchema({"x": "ordinal"}, "y", "b", "p")

    def test_prepare_drops_undeclared_columns(self, trial):
        """Test undeclared columns are left out without touching the input."""
        df, schema_dict = trial
        df = df.assign(participant_id=range(len(df)))
        out = FeatureSchema.from_dict(schema_dict).prepare(df)
        assert "participant_id" not in out.columns
        assert "participant_id" in df.columns

    def test_undeclared_nominal_level_raises(self, trial):
        """Test a nominal value outside its declared levels."""
        df, schema_dict = trial
        df = df.copy()
        df.loc[0, "education"] = "PhD"
        with pytest.raises(SchemaError):
            FeatureSchema.from_dict(schema_dict).prepare(df)

    def test_binary_out_of_range_raises(self, trial):
        """Test a binary feature holding a value other than 0/1."""
        df, schema_dict = trial
        df = df.copy()
        df.loc[0, "depression"] = 2
        with pytest.raises(SchemaError):
            FeatureSchema.from_dict(schema_dict).prepare(df)

    def test_missing_outcome_raises(self, trial):
        """Test missing outcome values are rejected."""
        df, schema_dict = trial
        df = df.copy()
        df.loc[3, "abstinent"] = np.nan
        with pytest.raises(SchemaError):
            FeatureSchema.from_dict(schema_dict).prepare(df)

    def test_numeric_nominal_levels_match(self):
        """Test float-coded nominal values match integer levels."""
        schema = FeatureSchema(
            {"site": {"type": "nominal", "levels": [1, 2, 3]}}, "y", "b", "p"
        )
        df = pd.DataFrame(
            {"y": [0, 1, 0], "b": [0, 1, 1], "p": [1, 0, 1], "site": [1.0, 2.0, 3.0]}
        )
        out = schema.prepare(df)
        assert list(out["site"]) == [1, 2, 3]

    def test_encode_nominal_indicator_columns(self, trial):
        """Test indicator and ordinal encodings of a nominal feature."""
        df, schema_dict = trial
        schema = FeatureSchema.from_dict(schema_dict)
        data = schema.prepare(df.dropna())
        X, origin = encode_features(data, schema, ["education", "age"])
        assert list(X.columns) == ["education[HS]", "education[College]", "age"]
        assert origin["education[HS]"] == "education"
        X_codes, _ = encode_features(data, schema, ["education"], one_hot=False)
        assert set(X_codes["education"].unique()) <= {0.0, 1.0, 2.0}

    def test_verify_column_types_reports(self):
        """Test a 0/1 column declared continuous is reported."""
        schema = FeatureSchema({"score": "continuous"}, "y", "b", "p")
        df = pd.DataFrame({"score": [0.0, 1.0, 1.0, 0.0]})
        report = verify_column_types(df, schema)
        assert report["n_warnings"] == 1
        assert report["issues"][0]["issue"] == "continuous_looks_binary"


class TestImputation:
    """Tests for the multiple imputation adapter."""

    def test_completed_datasets(self, trial):
        """Test every imputed dataset is complete and type-valid."""
        df, schema_dict = trial
        schema = FeatureSchema.from_dict(schema_dict)
        datasets = impute(df, schema, imputation_count=3, seed=RANDOM_STATE)
        assert len(datasets) == 3
        for d in datasets:
            assert d[schema.feature_names].isnull().sum().sum() == 0
            assert set(d["education"].unique()) <= {"<HS", "HS", "College"}
            assert set(d["depression"].unique()) <= {0.0, 1.0}
            assert (d["abstinent"].to_numpy() == df["abstinent"].to_numpy()).all()

    def test_input_not_mutated(self, trial):
        """Test imputation leaves the input frame alone."""
        df, schema_dict = trial
        before = df.isnull().sum().sum()
        impute(df, FeatureSchema.from_dict(schema_dict), imputation_count=2)
        assert df.isnull().sum().sum() == before

    def test_deterministic_under_seed(self, trial):
        """Test the same seed gives the same imputations."""
        df, schema_dict = trial
        schema = FeatureSchema.from_dict(schema_dict)
        a = impute(df, schema, imputation_count=2, seed=7)
        b = impute(df, schema, imputation_count=2, seed=7)
        for x, y in zip(a, b):
            pd.testing.assert_frame_equal(x, y)

    def test_imputations_differ(self, trial):
        """Test separate imputations draw different values."""
        df, schema_dict = trial
        datasets = impute(df, FeatureSchema.from_dict(schema_dict), imputation_count=2)
        miss = df["ftnd"].isnull().to_numpy()
        assert not np.allclose(
            datasets[0]["ftnd"].to_numpy()[miss], datasets[1]["ftnd"].to_numpy()[miss]
        )

    def test_pmm_draws_observed_values(self, trial):
        """Test PMM only fills in observed donor values."""
        df, schema_dict = trial
        datasets = impute(df, FeatureSchema.from_dict(schema_dict), imputation_count=1)
        observed = set(df["age"].dropna())
        assert set(datasets[0]["age"]) <= observed

    def test_complete_data_returns_copies(self, complete_trial):
        """Test complete data yields distinct copies."""
        df, schema_dict = complete_trial
        datasets = impute(df, FeatureSchema.from_dict(schema_dict), imputation_count=2)
        assert len(datasets) == 2
        assert datasets[0] is not datasets[1]


class TestPartition:
    """Tests for the treatment-group partitioner."""

    def test_four_disjoint_groups(self, complete_trial):
        """Test the 2x2 design splits into four disjoint groups."""
        df, schema_dict = complete_trial
        schema = FeatureSchema.from_dict(schema_dict)
        data = schema.prepare(df)
        groups = partition_groups(data, schema)
        assert len(groups) == 4
        assert sum(len(g) for g in groups.values()) == len(data)
        assert "behavioral=1|pharmacotherapy=0" in groups
        for label, g in groups.items():
            b, p = label.split("|")
            assert (g["behavioral"] == int(b.split("=")[1])).all()
            assert (g["pharmacotherapy"] == int(p.split("=")[1])).all()

    def test_groups_are_independent_copies(self, complete_trial):
        """Test editing a group leaves the parent frame alone."""
        df, schema_dict = complete_trial
        schema = FeatureSchema.from_dict(schema_dict)
        data = schema.prepare(df)
        original = data["age"].copy()
        for g in partition_groups(data, schema).values():
            g["age"] = -1.0
        pd.testing.assert_series_equal(data["age"], original)


class TestFolding:
    """Every record is held out exactly once."""

    def test_leave_one_out_cover(self):
        """Test LOOCV holds out each record once."""
        y = np.array([0, 1] * 6)
        folds = make_folds(y, "leave-one-out")
        assert len(folds) == 12
        check_folds(folds, 12)

    def test_k_fold_cover(self):
        """Test stratified k-fold covers every record."""
        y = np.array([0] * 15 + [1] * 10)
        folds = make_folds(y, "k-fold", n_splits=5, seed=1)
        assert len(folds) == 5
        check_folds(folds, 25)

    def test_k_fold_small_minority_falls_back(self):
        """Test plain k-fold when the minority class is too small to stratify."""
        y = np.array([0] * 20 + [1] * 3)
        folds = make_folds(y, "k-fold", n_splits=5)
        check_folds(folds, 23)

    def test_check_folds_detects_double_hold_out(self):
        """Test a record held out twice is caught."""
        folds = [(np.array([1, 2]), np.array([0])), (np.array([1, 2]), np.array([0]))]
        with pytest.raises(ValueError):
            check_folds(folds, 3)


class TestSelectionAlgorithms:
    """Tests for the four variable selectors."""

    def test_elastic_net_at_l1_ratio_one_matches_lasso(self, signal_data):
        """Test elastic net with l1_ratio=1 equals the lasso."""
        X, y = signal_data
        params = {"lambda": 0.05}
        lasso = LassoSelector().fit(X, y, params, seed=RANDOM_STATE)
        enet = ElasticNetSelector().fit(
            X, y, {"lambda": 0.05, "l1_ratio": 1.0}, seed=RANDOM_STATE
        )
        np.testing.assert_allclose(
            lasso["coefficients"].to_numpy(), enet["coefficients"].to_numpy()
        )
        assert lasso["selected_columns"] == enet["selected_columns"]

    def test_random_forest_deterministic(self, signal_data):
        """Test random forest selection is repeatable under a seed."""
        X, y = signal_data
        algo = ForestImportanceSelector(n_estimators=25)
        a = evaluate(algo, X, y, seed=RANDOM_STATE)
        b = evaluate(algo, X, y, seed=RANDOM_STATE)
        assert a["selected"] == b["selected"]
        assert a["accuracy"] == b["accuracy"]
        pd.testing.assert_series_equal(a["coefficients"], b["coefficients"])

    def test_random_forest_importance_threshold(self, signal_data):
        """Test selected features meet the mean-importance threshold."""
        X, y = signal_data
        out = ForestImportanceSelector(n_estimators=25).fit(X, y, {"max_features": 2})
        importances = out["coefficients"]
        assert importances.sum() == pytest.approx(1.0)
        assert "signal" in out["selected_columns"]
        assert all(importances[c] >= importances.mean() for c in out["selected_columns"])

    def test_svm_rfe_deterministic(self, signal_data):
        """Test SVM-RFE is repeatable and ranks the signal first."""
        X, y = signal_data
        algo = SvmRfeSelector(subset_sizes=[1, 2])
        a = evaluate(algo, X, y, seed=RANDOM_STATE)
        b = evaluate(algo, X, y, seed=RANDOM_STATE)
        assert a["selected"] == b["selected"]
        assert a["best_params"] == b["best_params"]
        assert a["n_selected"] == a["best_params"]["n_features"]
        assert a["ranking"]["signal"] == 1

    def test_default_grids(self):
        """Test default hyperparameter grid sizes."""
        assert len(LassoSelector().default_grid(5)) == 100
        assert len(ElasticNetSelector().default_grid(5)) == 1100
        assert SvmRfeSelector().default_grid(6) == [
            {"n_features": 5},
            {"n_features": 6},
        ]
        assert ForestImportanceSelector().default_grid(9) == [{"max_features": 3}]


class TestSelectionHarness:
    """Tests for the cross-validated selector harness."""

    def test_recovers_perfect_predictor(self, signal_data):
        """Test the lasso finds a feature equal to the label."""
        X, y = signal_data
        result = evaluate(
            LassoSelector(lambda_grid=[0.01, 0.05, 0.1]), X, y, group="g1", imputation=0
        )
        assert result["status"] == "ok"
        assert result["accuracy"] >= 0.95
        assert "signal" in result["selected"]
        assert result["n_folds"] == len(y)
        assert np.array_equal(np.sort(result["held_out"]), np.arange(len(y)))

    @pytest.mark.slow
    def test_recovers_perfect_predictor_default_grid(self, signal_data):
        """Test the lasso finds the signal over its full default lambda grid."""
        X, y = signal_data
        result = evaluate(LassoSelector(), X, y, group="g1", imputation=0)
        assert result["status"] == "ok"
        assert result["accuracy"] >= 0.95
        assert "signal" in result["selected"]
        assert len(result["grid_scores"]) == 100

    def test_sparsest_tie_break(self, signal_data):
        """Test ties go to the sparsest grid point."""
        X, y = signal_data
        result = evaluate(LassoSelector(lambda_grid=[0.01, 0.05, 0.1]), X, y)
        grid = result["grid_scores"]
        tied = grid[grid["accuracy"] >= grid["accuracy"].max() - 1e-12]
        assert result["best_params"]["lambda"] in set(
            tied.loc[tied["mean_selected"] == tied["mean_selected"].min(), "lambda"]
        )

    def test_first_tie_break(self, signal_data):
        """Test ties go to grid order under tie_break='first'."""
        X, y = signal_data
        result = evaluate(
            LassoSelector(lambda_grid=[0.01, 0.05, 0.1]), X, y, tie_break="first"
        )
        grid = result["grid_scores"]
        first = grid.index[grid["accuracy"] >= grid["accuracy"].max() - 1e-12][0]
        assert result["best_params"]["lambda"] == grid.loc[first, "lambda"]

    def test_single_class_training_fold_raises(self):
        """Test a LOO training fold without one class raises with context."""
        rng = np.random.RandomState(0)
        X = pd.DataFrame({"a": rng.normal(size=10), "b": rng.normal(size=10)})
        y = np.array([1] + [0] * 9)
        with pytest.raises(InsufficientDataError) as exc:
            evaluate(LassoSelector(lambda_grid=[0.1]), X, y, group="small")
        assert exc.value.group == "small"
        assert exc.value.algorithm == "lasso"

    def test_too_few_records_for_k_fold_raises(self):
        """Test fewer records than k-fold splits raises with context."""
        X = pd.DataFrame({"a": [0.1, 0.5, -0.3, 1.2], "b": [1.0, 0.0, 2.0, 1.5]})
        y = np.array([0, 1, 0, 1])
        with pytest.raises(InsufficientDataError) as exc:
            evaluate(
                LassoSelector(lambda_grid=[0.1]), X, y,
                folding="k-fold", n_splits=5, group="tiny", imputation=1,
            )
        assert exc.value.group == "tiny"
        assert exc.value.algorithm == "lasso"
        assert exc.value.imputation == 1

    def test_non_convergence_raises_with_context(self):
        """Test an unconverged fit raises NonConvergenceError with context."""
        rng = np.random.RandomState(1)
        X = pd.DataFrame(rng.normal(size=(60, 5)), columns=list("abcde"))
        y = (X["a"] + rng.normal(size=60) > 0).astype(int).to_numpy()
        algo = LassoSelector(lambda_grid=[0.001], max_iter=1, tol=1e-10)
        with pytest.raises(NonConvergenceError) as exc:
            evaluate(algo, X, y, folding="k-fold", n_splits=3, group="g", imputation=2)
        assert exc.value.algorithm == "lasso"
        assert exc.value.group == "g"
        assert exc.value.imputation == 2

    def test_feature_origin_maps_indicators(self, signal_data):
        """Test indicator columns are reported under their source feature."""
        X, y = signal_data
        X = X.rename(columns={"noise_1": "site[B]"})
        origin = {c: c for c in X.columns}
        origin["site[B]"] = "site"
        result = evaluate(
            LassoSelector(lambda_grid=[0.001]), X, y, feature_origin=origin
        )
        assert "site[B]" not in result["selected"]
        assert all(origin[c] in result["selected"] for c in result["selected_columns"])


class TestPooling:
    """Tests for pooling across imputations."""

    def test_rubin_rules(self):
        """Test Rubin's rules on a hand-computed example."""
        pooled = pool_rubin([1.0, 2.0, 3.0], [0.1, 0.1, 0.1])
        assert pooled["estimate"] == pytest.approx(2.0)
        assert pooled["between_var"] == pytest.approx(1.0)
        assert pooled["total_var"] == pytest.approx(0.1 + 4.0 / 3.0)
        r = (4.0 / 3.0) / 0.1
        assert pooled["df"] == pytest.approx(2 * (1 + 1 / r) ** 2)

    def test_rubin_single_imputation(self):
        """Test one imputation pools to itself with infinite df."""
        pooled = pool_rubin([0.5], [0.04])
        assert pooled["se"] == pytest.approx(0.2)
        assert math.isinf(pooled["df"])

    @pytest.mark.parametrize(
        "policy,expected",
        [("majority", ["a"]), ("union", ["a", "b", "c"]), ("intersection", ["a"])],
    )
    def test_selection_policies(self, policy, expected):
        """Test each selection pooling policy."""
        results = [
            _fake_result(["a", "b"], imputation=0),
            _fake_result(["a"], imputation=1),
            _fake_result(["a", "c"], imputation=2),
        ]
        pooled = pool_selection_results(results, policy)
        assert sorted(pooled["selected"]) == expected
        assert pooled["selection_frequency"]["a"] == pytest.approx(1.0)
        assert pooled["n_imputations"] == 3

    def test_first_policy_uses_imputation_zero(self):
        """Test the 'first' policy takes imputation 0."""
        results = [_fake_result(["b"], imputation=1), _fake_result(["a"], imputation=0)]
        assert pool_selection_results(results, "first")["selected"] == ["a"]

    def test_no_successful_results_raises(self):
        """Test pooling only failures raises AggregationError."""
        with pytest.raises(AggregationError):
            pool_selection_results([{"status": "failed"}])


class TestAggregator:
    """Tests for cross-group aggregation."""

    def test_union_and_intersection_bounds(self):
        """Test every best set lies between the intersection and the union."""
        per_group = {
            "g1": {"lasso": _fake_result(["a", "b"], score=0.8)},
            "g2": {"lasso": _fake_result(["a", "c"], score=0.7)},
            "g3": {"lasso": _fake_result(["a", "b", "d"], score=0.9)},
        }
        agg = aggregate(per_group)
        union, inter = set(agg["union"]), set(agg["intersection"])
        for res in agg["best_result"].values():
            assert union >= set(res["selected"]) >= inter
        assert agg["intersection"] == ["a"]
        assert agg["union"] == ["a", "b", "c", "d"]

    def test_best_method_prefers_score_then_sparsity(self):
        """Test best method ranks by score, then fewer features."""
        per_group = {
            "g1": {
                "lasso": _fake_result(["a", "b"], score=0.8, algorithm="lasso"),
                "svm_rfe": _fake_result(["a"], score=0.8, algorithm="svm_rfe"),
                "random_forest": _fake_result(["c"], score=0.7, algorithm="random_forest"),
            }
        }
        agg = aggregate(per_group)
        assert agg["best_method"]["g1"] == "svm_rfe"

    def test_equal_score_and_size_follows_algorithm_order(self):
        """Test full ties fall back to algorithm order."""
        per_group = {
            "g1": {
                "svm_rfe": _fake_result(["a"], score=0.8, algorithm="svm_rfe"),
                "elastic_net": _fake_result(["b"], score=0.8, algorithm="elastic_net"),
            }
        }
        assert aggregate(per_group)["best_method"]["g1"] == "elastic_net"

    def test_all_failed_group_strict_raises(self):
        """Test strict aggregation raises on an all-failed group."""
        failed = {"status": "failed", "error_type": "InsufficientDataError", "message": "x"}
        per_group = {
            "g1": {"lasso": _fake_result(["a"])},
            "g2": {"lasso": failed},
        }
        with pytest.raises(AggregationError) as exc:
            aggregate(per_group, strict=True)
        assert "g2" in str(exc.value)

    def test_all_failed_group_lenient(self):
        """Test lenient aggregation lists the failed group and carries on."""
        failed = {"status": "failed", "error_type": "InsufficientDataError", "message": "x"}
        per_group = {
            "g1": {"lasso": _fake_result(["a"]), "svm_rfe": failed},
            "g2": {"lasso": failed},
        }
        agg = aggregate(per_group, strict=False)
        assert list(agg["failed_groups"]) == ["g2"]
        assert np.isnan(agg["accuracy_matrix"].loc["g1", "svm_rfe"])
        assert agg["union"] == ["a"]


class TestModerationModel:
    """Tests for the stepwise moderation model fitter."""

    def test_build_terms_scope(self, complete_trial):
        """Test term scope order and nominal interaction columns."""
        _, schema_dict = complete_trial
        schema = FeatureSchema.from_dict(schema_dict)
        terms = build_terms(
            schema, "behavioral", ["ftnd", "education"], [("ftnd", "education")]
        )
        assert list(terms) == [
            "behavioral",
            "ftnd",
            "education",
            "behavioral:ftnd",
            "behavioral:education",
            "ftnd:education",
            "behavioral:ftnd:education",
        ]
        assert terms["behavioral:education"]["columns"] == [
            "behavioral:education[HS]",
            "behavioral:education[College]",
        ]

    def test_keeps_true_moderator(self, moderated_trial):
        """Test the simulated moderator interaction survives stepwise search."""
        df, schema = moderated_trial
        model = fit_moderation_model(df, schema, ["ftnd", "age", "depression"])
        assert "behavioral:ftnd" in model["terms"]
        assert "ftnd" in model["terms"] and "behavioral" in model["terms"]
        assert model["table"]["term"].iloc[0] == "Intercept"

    def test_stepwise_is_idempotent(self, moderated_trial):
        """Test restarting from the selected terms changes nothing."""
        df, schema = moderated_trial
        first = fit_moderation_model(df, schema, ["ftnd", "age", "depression"])
        again = fit_moderation_model(
            df, schema, ["ftnd", "age", "depression"], start_terms=first["terms"]
        )
        assert again["terms"] == first["terms"]
        assert again["score"] == pytest.approx(first["score"])

    def test_both_directions_adds_omitted_main_effect(self, moderated_trial):
        """Test stepwise search adds back a strong term left out of the start."""
        df, schema = moderated_trial
        model = fit_moderation_model(
            df, schema, ["ftnd", "age", "depression"],
            direction="both", start_terms=["behavioral", "age"],
        )
        added = [h["term"] for h in model["history"] if h["action"] == "add"]
        assert "ftnd" in added
        assert "ftnd" in model["terms"]

    def test_forward_from_treatment_only(self, moderated_trial):
        """Test forward search builds up the moderator and its interaction."""
        df, schema = moderated_trial
        model = fit_moderation_model(
            df, schema, ["ftnd", "age", "depression"],
            direction="forward", start_terms=["behavioral"],
        )
        added = [h["term"] for h in model["history"] if h["action"] == "add"]
        assert not any(h["action"] == "remove" for h in model["history"])
        assert "ftnd" in added and "ftnd" in model["terms"]
        assert "behavioral:ftnd" in model["terms"]
        assert added.index("ftnd") < added.index("behavioral:ftnd")

    def test_marginality_respected(self, moderated_trial):
        """Test every kept interaction has its main effects."""
        df, schema = moderated_trial
        model = fit_moderation_model(df, schema, ["ftnd", "age", "depression"])
        for term in model["terms"]:
            parts = model["term_parts"][term]
            if len(parts) > 1:
                for p in parts:
                    assert p in model["terms"]

    def test_fixed_term_set(self, moderated_trial):
        """Test direction='none' fits the given terms as is."""
        df, schema = moderated_trial
        model = fit_moderation_model(
            df, schema, ["ftnd", "age"], direction="none",
            start_terms=["behavioral", "ftnd", "age", "behavioral:ftnd"],
        )
        assert model["terms"] == ["behavioral", "ftnd", "age", "behavioral:ftnd"]

    def test_bic_penalises_more(self, moderated_trial):
        """Test BIC keeps no more terms than AIC."""
        df, schema = moderated_trial
        aic = fit_moderation_model(df, schema, ["ftnd", "age", "depression"])
        bic = fit_moderation_model(df, schema, ["ftnd", "age", "depression"], criterion="bic")
        assert len(bic["terms"]) <= len(aic["terms"])

    def test_separation_abort(self, separated_data):
        """Test separation raises SeparationError naming the term."""
        df, schema = separated_data
        with pytest.raises(SeparationError) as exc:
            fit_moderation_model(df, schema, ["m", "x"], on_separation="abort", group="g4")
        assert exc.value.term in ("m", "behavioral:m")
        assert exc.value.group == "g4"

    def test_separation_drop(self, separated_data):
        """Test separated terms are dropped from scope and flagged."""
        df, schema = separated_data
        model = fit_moderation_model(df, schema, ["m", "x"], on_separation="drop")
        assert model["flagged"]
        assert "m" not in model["scope"]
        assert "behavioral:m" not in model["scope"]
        assert "m" not in model["terms"]

    def test_incomplete_data_raises(self, trial):
        """Test missing moderator values are rejected."""
        df, schema_dict = trial
        schema = FeatureSchema.from_dict(schema_dict)
        with pytest.raises(SchemaError):
            fit_moderation_model(schema.prepare(df), schema, ["ftnd"])

    def test_vote_and_pool(self, moderated_trial):
        """Test term voting and Rubin pooling over two datasets."""
        df, schema = moderated_trial
        halves = [df.iloc[: len(df) // 2 * 2 : 2], df.iloc[1::2]]
        fits = [
            fit_moderation_model(d.reset_index(drop=True), schema, ["ftnd", "age"], imputation=i)
            for i, d in enumerate(halves)
        ]
        voted = vote_terms(fits)
        refits = [
            fit_moderation_model(
                d.reset_index(drop=True), schema, ["ftnd", "age"],
                direction="none", start_terms=voted, imputation=i,
            )
            for i, d in enumerate(halves)
        ]
        pooled = pool_moderation_models(refits)
        assert pooled["pooled"] is True
        assert pooled["n_imputations"] == 2
        assert list(pooled["table"]["column"]) == list(refits[0]["table"]["column"])
        expected = np.mean([r["table"]["coef"].iloc[1] for r in refits])
        assert pooled["table"]["coef"].iloc[1] == pytest.approx(expected)

    @pytest.mark.slow
    def test_aic_removes_null_interaction(self):
        """Null interaction is removed in most simulated trials (AIC) and
        nearly all of them (BIC)."""
        schema = FeatureSchema({"m": "continuous"}, "y", "treat", "pharm")
        removed = {"aic": 0, "bic": 0}
        n_runs = 40
        for seed in range(n_runs):
            rng = np.random.RandomState(seed)
            n = 500
            treat = rng.binomial(1, 0.5, n)
            m = rng.normal(size=n)
            logit = -0.2 + 0.5 * treat + 0.3 * m
            y = rng.binomial(1, 1 / (1 + np.exp(-logit)))
            df = pd.DataFrame(
                {"y": y, "treat": treat, "pharm": rng.binomial(1, 0.5, n), "m": m}
            )
            for criterion in removed:
                model = fit_moderation_model(df, schema, ["m"], criterion=criterion)
                removed[criterion] += "treat:m" not in model["terms"]
        assert removed["aic"] / n_runs >= 0.65
        assert removed["bic"] / n_runs >= 0.9


class TestEffectReporter:
    """Tests for odds-ratio reporting."""

    def test_known_table(self):
        """Test odds ratio, CI and p-value on a known table."""
        res = odds_ratio_from_table([[30, 10], [5, 35]])
        assert res["odds_ratio"] == pytest.approx(21.0)
        assert res["log_odds_ratio"] == pytest.approx(3.0445, abs=1e-3)
        assert res["ci_low"] < 21.0 < res["ci_high"]
        assert res["p_value"] < 0.001
        assert res["corrected"] is False

    def test_log_odds_ratio_consistent(self):
        """Test the log odds ratio is the log of the odds ratio."""
        rng = np.random.RandomState(RANDOM_STATE)
        for _ in range(50):
            table = rng.randint(1, 50, size=(2, 2))
            res = odds_ratio_from_table(table)
            assert res["log_odds_ratio"] == pytest.approx(math.log(res["odds_ratio"]))

    def test_zero_cell_raises(self):
        """Test a zero cell raises without a correction."""
        with pytest.raises(DegenerateTableError):
            odds_ratio_from_table([[0, 10], [5, 35]])

    def test_zero_cell_with_correction(self):
        """Test the continuity correction on a zero-cell table."""
        res = odds_ratio_from_table([[0, 10], [5, 35]], continuity_correction=0.5)
        assert res["corrected"] is True
        assert res["odds_ratio"] == pytest.approx((0.5 * 35.5) / (10.5 * 5.5))

    def test_contingency_table_layout(self):
        """Test treated-first table layout and the unadjusted odds ratio."""
        df = pd.DataFrame({"t": [1, 1, 1, 0, 0], "y": [1, 1, 0, 1, 0]})
        assert contingency_table(df, "t", "y").tolist() == [[2, 1], [1, 1]]
        odds, log_odds = unadjusted_odds_ratio(df, "t", "y")
        assert odds == pytest.approx(2.0)
        assert log_odds == pytest.approx(math.log(2.0))

    def test_unadjusted_summary_flags_degenerate_arm(self):
        """Test a zero-cell arm is flagged rather than raised."""
        schema = FeatureSchema({"x": "continuous"}, "y", "b", "p")
        df = pd.DataFrame(
            {
                "y": [1, 0, 1, 0, 0, 0, 0, 0, 1, 1],
                "b": [1, 1, 0, 0, 1, 1, 0, 0, 0, 0],
                "p": [0, 0, 0, 0, 1, 1, 1, 1, 1, 1],
                "x": np.arange(10.0),
            }
        )
        table = unadjusted_summary(df, schema)
        assert list(table["arm"]) == ["overall", "p=0", "p=1"]
        arm = table.set_index("arm")
        assert not arm.loc["p=0", "degenerate"]
        assert arm.loc["p=1", "degenerate"]
        assert np.isnan(arm.loc["p=1", "odds_ratio"])

    def test_adjusted_effects(self, moderated_trial):
        """Test interaction effects are reported with direction and CI."""
        df, schema = moderated_trial
        model = fit_moderation_model(df, schema, ["ftnd", "age"])
        effects = adjusted_effects(model)
        eff = effects["behavioral:ftnd"]
        assert eff["direction"] == "amplifies"
        assert eff["significant"]
        assert eff["ci_low"] < eff["odds_ratio"] < eff["ci_high"]
        assert "ftnd" not in effects


class TestSettings:
    """Tests for analysis settings resolution."""

    def test_defaults(self):
        """Test default settings."""
        settings = AnalysisSettings.resolve()
        assert settings["tie_break"] == "sparsest"
        assert settings["selection_pooling"] == "majority"
        assert settings["continuity_correction"] is None

    def test_env_override(self, monkeypatch):
        """Test MODERA_* environment overrides."""
        monkeypatch.setenv("MODERA_CRITERION", "bic")
        monkeypatch.setenv("MODERA_IMPUTATION_COUNT", "3")
        settings = AnalysisSettings.resolve()
        assert settings["criterion"] == "bic"
        assert settings["imputation_count"] == 3

    def test_session_config_wins(self, monkeypatch):
        """Test session config takes precedence over the environment."""
        monkeypatch.setenv("MODERA_CRITERION", "bic")
        assert AnalysisSettings.resolve({"criterion": "aic"})["criterion"] == "aic"

    def test_unknown_key_raises(self):
        """Test unknown settings keys are rejected."""
        with pytest.raises(ValueError):
            AnalysisSettings.resolve({"lambda": 1.0})

    def test_bad_choice_raises(self):
        """Test invalid choices are rejected."""
        with pytest.raises(ValueError):
            AnalysisSettings.resolve({"tie_break": "densest"})


class TestErrors:
    """Tests for error context handling."""

    def test_context_rendering(self):
        """Test context appears in the message and dict form."""
        err = SeparationError("diverged", group="g1", term="x")
        assert "group=g1" in str(err)
        assert err.to_dict()["error_type"] == "SeparationError"

    def test_with_context_keeps_existing(self):
        """Test with_context fills gaps without overwriting."""
        err = NonConvergenceError("slow", algorithm="lasso")
        out = err.with_context(algorithm="svm_rfe", group="g2")
        assert isinstance(out, NonConvergenceError)
        assert out.algorithm == "lasso"
        assert out.group == "g2"
        assert isinstance(out, ModeraError)


class TestAuditLog:
    """Tests for the audit trail."""

    def test_entries_written(self, temp_audit_log):
        """Test audit entries are appended as JSON lines."""
        temp_audit_log.log("TEST_EVENT", {"value": np.float64(1.5)})
        lines = temp_audit_log.jsonl_path.read_text().splitlines()
        assert len(lines) == 2
        entry = json.loads(lines[-1])
        assert entry["event"] == "TEST_EVENT"
        assert entry["log_sequence"] == 2

    def test_finalize_session(self, temp_audit_log):
        """Test the session seal."""
        temp_audit_log.log("TEST_EVENT", {})
        seal = temp_audit_log.finalize_session()
        assert len(seal["integrity_hash"]) == 64
        assert seal["total_entries"] == 2


class TestIntegration:
    """End-to-end pipeline on synthetic trial data."""

    def test_full_pipeline(self, trial):
        """Test the complete pipeline and its exported files."""
        df, schema_dict = trial
        schema = FeatureSchema.from_dict(schema_dict)
        with tempfile.TemporaryDirectory() as tmpdir:
            out_dir = Path(tmpdir) / "output"
            audit = AuditLog(out_dir / "audit_log.jsonl")
            results = run_moderation_analysis(df, schema, _small_config(), audit, out_dir)

            agg = results["aggregation"]
            assert set(agg["union"]) >= set(agg["intersection"])
            assert agg["accuracy_matrix"].shape[0] == 4
            assert list(results["unadjusted"]["arm"])[0] == "overall"
            assert results["n_imputations"] == 2
            assert (out_dir / "Run_Manifest.json").exists()
            assert (out_dir / "tables" / "Accuracy_Matrix.csv").exists()
            assert (out_dir / "tables" / "Selected_Features.csv").exists()
            manifest = json.loads((out_dir / "Run_Manifest.json").read_text())
            assert manifest["settings"]["imputation_count"] == 2

    def test_group_smaller_than_k_fold_fails_alone(self, trial):
        """Test a group too small for k-fold fails without stopping the run."""
        df, schema_dict = trial
        schema = FeatureSchema.from_dict(schema_dict)
        small = "behavioral=1|pharmacotherapy=1"
        in_small = (df["behavioral"] == 1) & (df["pharmacotherapy"] == 1)
        df = pd.concat([df[~in_small], df[in_small].iloc[:3]]).reset_index(drop=True)

        results = run_moderation_analysis(df, schema, _small_config())

        failures = results["unit_failures"]
        assert len(failures) == 8
        assert set(failures["group"]) == {small}
        assert set(failures["error_type"]) == {"InsufficientDataError"}
        assert failures[["group", "algorithm", "imputation"]].notnull().all().all()
        agg = results["aggregation"]
        assert small in agg["failed_groups"]
        assert small not in agg["best_method"]
        assert len(agg["best_method"]) == 3

    def test_single_class_group_under_loo(self, trial):
        """Test a group with one outcome class is reported as failed units."""
        df, schema_dict = trial
        schema = FeatureSchema.from_dict(schema_dict)
        failing = "behavioral=0|pharmacotherapy=0"
        df = df.copy()
        df.loc[(df["behavioral"] == 0) & (df["pharmacotherapy"] == 0), "abstinent"] = 0
        config = dict(_small_config(), imputation_count=1, folding="leave-one-out")

        results = run_moderation_analysis(df, schema, config)

        failures = results["unit_failures"]
        assert set(failures["group"]) == {failing}
        assert sorted(failures["algorithm"]) == sorted(
            ["lasso", "elastic_net", "random_forest", "svm_rfe"]
        )
        assert (failures["imputation"] == 0).all()
        assert failures[["group", "algorithm", "imputation"]].notnull().all().all()
        agg = results["aggregation"]
        others = [g for g in agg["accuracy_matrix"].index if g != failing]
        assert len(others) == 3
        for group in others:
            assert group in agg["best_method"]
            assert agg["accuracy_matrix"].loc[group].notnull().any()
        assert agg["accuracy_matrix"].loc[failing].isnull().all()


def _small_config():
    return {
        "imputation_count": 2,
        "folding": "k-fold",
        "n_splits": 5,
        "lambda_grid": [0.01, 0.1],
        "l1_ratio_grid": [0.5, 1.0],
        "rf_estimators": 20,
        "rfe_sizes": [2, 3],
        "strict_aggregation": False,
        "n_jobs": 1,
    }


def _fake_result(selected, score=0.8, algorithm="lasso", imputation=0):
    features = ["a", "b", "c", "d"]
    return {
        "status": "ok",
        "algorithm": algorithm,
        "group": "g",
        "imputation": imputation,
        "scoring": "accuracy",
        "best_params": {},
        "score": score,
        "accuracy": score,
        "auc": 0.5,
        "coefficients": pd.Series([1.0 if f in selected else 0.0 for f in features], index=features),
        "selected": list(selected),
        "n_selected": len(selected),
        "feature_origin": {f: f for f in features},
    }


# Fixtures for shared test data
@pytest.fixture
def trial():
    """Synthetic trial with missing baseline values."""
    return SyntheticTrialGenerator.generate_trial(
        n_samples=200, missing_rate=0.1, random_state=RANDOM_STATE
    )


@pytest.fixture
def complete_trial():
    return SyntheticTrialGenerator.generate_trial(
        n_samples=200, missing_rate=0.0, random_state=RANDOM_STATE
    )


@pytest.fixture
def moderated_trial():
    """Complete trial where ftnd strongly moderates the behavioral effect."""
    df, schema_dict = SyntheticTrialGenerator.generate_trial(
        n_samples=800, missing_rate=0.0, moderator_effect=1.0, random_state=3
    )
    schema = FeatureSchema.from_dict(schema_dict)
    return schema.prepare(df), schema


@pytest.fixture
def signal_data():
    """40 records, 20 per class, one feature equal to the label."""
    rng = np.random.RandomState(RANDOM_STATE)
    y = np.array([0] * 20 + [1] * 20)
    X = pd.DataFrame(
        {
            "signal": y.astype(float),
            "noise_1": rng.normal(size=40),
            "noise_2": rng.normal(size=40),
            "noise_3": rng.normal(size=40),
        }
    )
    return X, y


@pytest.fixture
def separated_data():
    """Outcome is always 1 when binary m is 1."""
    rng = np.random.RandomState(11)
    n = 300
    treat = rng.binomial(1, 0.5, n)
    m = rng.binomial(1, 0.3, n)
    x = rng.normal(size=n)
    logit = -0.5 + 0.5 * treat + 0.3 * x
    y = np.where(m == 1, 1, rng.binomial(1, 1 / (1 + np.exp(-logit))))
    df = pd.DataFrame(
        {"y": y, "behavioral": treat, "pharm": rng.binomial(1, 0.5, n), "m": m.astype(float), "x": x}
    )
    schema = FeatureSchema(
        {"m": "binary", "x": "continuous"}, "y", "behavioral", "pharm"
    )
    return df, schema


@pytest.fixture
def temp_audit_log():
    """Create temporary audit log."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield AuditLog(Path(tmpdir) / "audit.jsonl")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
