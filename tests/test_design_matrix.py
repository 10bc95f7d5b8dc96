"""Tests for explicit design matrix construction and rank checking."""

import numpy as np
import pandas as pd
import pytest

from meshrink.errors import AmbiguousCoefficientError, DesignRankError, InvalidDesignError
from meshrink.stats.design_matrix import (
    INTERCEPT_NAME,
    Categorical,
    DesignSpec,
    Intercept,
    Numeric,
    build_design_matrix,
    check_design_rank,
    parse_design_formula,
)


@pytest.fixture
def covariates():
    return pd.DataFrame(
        {
            "condition": ["ctrl", "ctrl", "ctrl", "ko", "ko", "ko"],
            "batch": ["b1", "b2", "b1", "b2", "b1", "b2"],
            "age": [30.0, 42.0, 51.0, 38.0, 45.0, 60.0],
        },
        index=pd.Index(["s1", "s2", "s3", "s4", "s5", "s6"], name="sample"),
    )


class TestParseDesignFormula:

    def test_intercept_and_inferred_kinds(self, covariates):
        spec = parse_design_formula("~ condition + age", covariates)
        assert spec.terms == (Intercept(), Categorical("condition"), Numeric("age"))

    def test_no_intercept_forms(self, covariates):
        for formula in ("~ 0 + condition", "~ condition - 1"):
            spec = parse_design_formula(formula, covariates)
            assert not spec.has_intercept
            assert spec.terms == (Categorical("condition"),)

    def test_intercept_only(self):
        spec = parse_design_formula("~ 1")
        assert spec.terms == (Intercept(),)

    def test_forced_categorical(self, covariates):
        spec = parse_design_formula("~ C(age)", covariates)
        assert spec.terms[1] == Categorical("age")

    def test_left_hand_side_ignored(self, covariates):
        spec = parse_design_formula("y ~ condition", covariates)
        assert spec.columns_used == ["condition"]

    def test_quoted_column_name(self, covariates):
        covariates["cell-type"] = ["A", "B", "A", "B", "A", "B"]

        spec = parse_design_formula('~ C(Q("cell-type"))', covariates)
        assert spec.terms == (Intercept(), Categorical("cell-type"))

        design = build_design_matrix('~ Q("cell-type") + condition', covariates)
        assert design.col_names == (INTERCEPT_NAME, "cell-typeB", "conditionko")
        assert design.formula == "~ Q('cell-type') + condition"

    def test_treatment_reference_and_levels(self, covariates):
        spec = parse_design_formula('~ C(condition, Treatment("ko"))', covariates)
        assert spec.terms[1] == Categorical("condition", reference="ko")

        spec = parse_design_formula('~ C(batch, levels=["b2", "b1"])', covariates)
        assert spec.terms[1] == Categorical("batch", levels=("b2", "b1"))

        design = build_design_matrix('~ C(condition, Treatment(reference="ko"))', covariates)
        assert design.col_names == (INTERCEPT_NAME, "conditionctrl")

    def test_term_removal(self, covariates):
        spec = parse_design_formula("~ condition + age - age", covariates)
        assert spec.columns_used == ["condition"]

    def test_unsupported_contrast(self, covariates):
        with pytest.raises(InvalidDesignError, match="Treatment"):
            parse_design_formula("~ C(condition, Sum)", covariates)

    @pytest.mark.parametrize("formula", ["condition", "~ condition:batch", "~ condition * batch", "~ (a + b", "~ a + ", "~ np.log(a)"])
    def test_malformed(self, formula):
        with pytest.raises(InvalidDesignError):
            parse_design_formula(formula)


class TestBuildDesignMatrix:

    def test_treatment_coding(self, covariates):
        design = build_design_matrix("~ condition", covariates)

        assert design.col_names == (INTERCEPT_NAME, "conditionko")
        np.testing.assert_array_equal(design.X[:, 0], np.ones(6))
        np.testing.assert_array_equal(design.X[:, 1], [0, 0, 0, 1, 1, 1])
        assert design.n_samples == 6
        assert design.n_params == 2
        assert design.df_residual == 4

    def test_reference_level(self, covariates):
        spec = DesignSpec((Intercept(), Categorical("condition", reference="ko")))
        design = build_design_matrix(spec, covariates)

        assert design.col_names == (INTERCEPT_NAME, "conditionctrl")
        np.testing.assert_array_equal(design.X[:, 1], [1, 1, 1, 0, 0, 0])

    def test_no_intercept_full_coding(self, covariates):
        design = build_design_matrix("~ 0 + condition + batch", covariates)
        assert design.col_names == ("conditionctrl", "conditionko", "batchb2")

    def test_numeric_standardized(self, covariates):
        spec = DesignSpec((Intercept(), Numeric("age", standardize=True)))
        design = build_design_matrix(spec, covariates)

        age = design.X[:, 1]
        assert abs(age.mean()) < 1e-12
        assert abs(age.std(ddof=1) - 1.0) < 1e-12

    def test_rows_follow_sample_ids(self, covariates):
        order = ["s6", "s1", "s5", "s2", "s4", "s3"]
        design = build_design_matrix("~ condition", covariates, sample_ids=order)

        assert design.sample_ids == tuple(order)
        np.testing.assert_array_equal(design.X[:, 1], [1, 0, 1, 0, 1, 0])

    def test_read_only(self, covariates):
        design = build_design_matrix("~ condition", covariates)
        with pytest.raises(ValueError):
            design.X[0, 0] = 5.0

    def test_xtx_inv(self, covariates):
        design = build_design_matrix("~ condition + age", covariates)
        np.testing.assert_allclose(
            design.xtx_inv() @ (design.X.T @ design.X), np.eye(3), atol=1e-8
        )


class TestDesignErrors:

    def test_missing_column(self, covariates):
        with pytest.raises(InvalidDesignError, match="not found in covariates"):
            build_design_matrix("~ genotype", covariates)

    def test_missing_sample(self, covariates):
        with pytest.raises(InvalidDesignError, match="samples missing"):
            build_design_matrix("~ condition", covariates, sample_ids=["s1", "s2", "s99"])

    def test_missing_values(self, covariates):
        covariates.loc["s3", "age"] = np.nan
        with pytest.raises(InvalidDesignError, match="missing values"):
            build_design_matrix("~ age", covariates)

    def test_unknown_level(self, covariates):
        spec = DesignSpec((Intercept(), Categorical("condition", levels=("ctrl",))))
        with pytest.raises(InvalidDesignError, match="not in levels"):
            build_design_matrix(spec, covariates)

    def test_too_many_params(self, covariates):
        covariates["sample_label"] = [f"l{i}" for i in range(6)]
        with pytest.raises(InvalidDesignError, match="residual df"):
            build_design_matrix("~ sample_label", covariates)

    def test_rank_deficient(self, covariates):
        covariates["group"] = covariates["condition"].map({"ctrl": "a", "ko": "b"})
        with pytest.raises(DesignRankError, match="rank-deficient") as exc_info:
            build_design_matrix("~ condition + group", covariates)

        assert exc_info.value.rank == 2
        assert exc_info.value.n_params == 3
        assert "groupb" in exc_info.value.col_names

    def test_check_design_rank(self):
        X = np.column_stack([np.ones(5), np.arange(5.0)])
        assert check_design_rank(X, ["a", "b"]) == 2
        with pytest.raises(DesignRankError):
            check_design_rank(np.column_stack([X, 2 * X[:, 1]]), ["a", "b", "c"])


class TestColumnIndex:

    def test_exact_match(self, covariates):
        design = build_design_matrix("~ condition + age", covariates)
        assert design.column_index("conditionko") == 1
        assert design.column_index("age") == 2

    def test_unknown_lists_columns(self, covariates):
        design = build_design_matrix("~ condition", covariates)
        with pytest.raises(AmbiguousCoefficientError, match="conditionko") as exc_info:
            design.column_index("condition")
        assert exc_info.value.n_matches == 0

    def test_ambiguous_name(self):
        # categorical 'x' level '1' and numeric 'x1' both produce 'x1'
        covariates = pd.DataFrame(
            {
                "x": ["0", "1", "0", "1", "0", "1"],
                "x1": [0.3, 1.2, 2.9, 0.1, 4.4, 3.3],
            },
            index=[f"s{i}" for i in range(6)],
        )
        design = build_design_matrix("~ x + x1", covariates)
        assert design.col_names == (INTERCEPT_NAME, "x1", "x1")

        with pytest.raises(AmbiguousCoefficientError, match="ambiguous") as exc_info:
            design.column_index("x1")
        assert exc_info.value.n_matches == 2
