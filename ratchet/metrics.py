from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Any, List
import pandas as pd

@dataclass
class MetricsStore:
    protocol_rows: List[Dict[str, Any]] = field(default_factory=list)
    bond_rows: List[Dict[str, Any]] = field(default_factory=list)
    epoch_rows: List[Dict[str, Any]] = field(default_factory=list)

    def add_protocol(self, row: Dict[str, Any]) -> None:
        self.protocol_rows.append(row)

    def add_bond_rows(self, rows: List[Dict[str, Any]]) -> None:
        self.bond_rows.extend(rows)

    def add_epoch(self, row: Dict[str, Any]) -> None:
        self.epoch_rows.append(row)

    def protocol_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.protocol_rows)

    def bond_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.bond_rows)

    def epoch_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.epoch_rows)
