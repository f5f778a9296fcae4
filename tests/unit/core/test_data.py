from pathlib import Path

import numpy as np
import pytest

from mirt_analysis.core.constants import MISSING_VALUE
from mirt_analysis.core.data import load_csv_to_response_matrix
from mirt_analysis.core.errors import InputError


def write_csv(path: Path, text: str) -> Path:
    path.write_text(text)
    return path


class TestLoadCsv:
    def test_items_and_row_ids(self, tmp_path: Path) -> None:
        csv = write_csv(tmp_path / "r.csv", "q1,q2\n1,0\n0,1\n1,1\n")
        ids, data = load_csv_to_response_matrix(csv)
        assert ids == ["0", "1", "2"]
        assert data.item_names == ("q1", "q2")
        np.testing.assert_array_equal(data.responses, [[1, 0], [0, 1], [1, 1]])

    def test_recodes_and_missing(self, tmp_path: Path) -> None:
        """Codes 1..5 become 0..K-1 and blank cells become missing."""
        csv = write_csv(
            tmp_path / "r.csv", "id,q1,q2\na,1,5\nb,3,\nc,5,1\n"
        )
        ids, data = load_csv_to_response_matrix(csv, id_column="id")
        assert ids == ["a", "b", "c"]
        assert data.item_names == ("q1", "q2")
        np.testing.assert_array_equal(data.responses[:, 0], [0, 1, 2])
        assert data.responses[1, 1] == MISSING_VALUE
        assert data.n_categories == (3, 2)

    def test_group_column(self, tmp_path: Path) -> None:
        csv = write_csv(
            tmp_path / "r.csv", "g,q1\nx,0\ny,1\nx,1\ny,0\n"
        )
        _, data = load_csv_to_response_matrix(csv, group_column="g")
        assert data.group_levels == ("x", "y")
        assert data.n_items == 1

    def test_missing_column(self, tmp_path: Path) -> None:
        csv = write_csv(tmp_path / "r.csv", "q1,q2\n1,0\n0,1\n")
        with pytest.raises(InputError, match="'id'"):
            load_csv_to_response_matrix(csv, id_column="id")

    def test_non_numeric(self, tmp_path: Path) -> None:
        csv = write_csv(tmp_path / "r.csv", "q1,q2\n1,yes\n0,no\n")
        with pytest.raises(InputError, match="Non-numeric"):
            load_csv_to_response_matrix(csv)
