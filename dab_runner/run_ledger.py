import os
import threading
from datetime import datetime

import pandas as pd

from dab_runner.logger_utils import ColoredLogger as log

COLUMNS = ["Session", "Account", "Task ID", "Type", "Result", "Attempts", "Error", "Started At", "Duration (s)"]


class RunLedger:
    """Record task outcomes to an Excel or CSV file - Thread-safe version"""

    _lock = threading.Lock()  # Class-level lock for file access

    def __init__(self, ledger_file):
        self.ledger_file = str(ledger_file)
        self.records = []

    @property
    def is_csv(self):
        return self.ledger_file.lower().endswith('.csv')

    def record(self, session, account, task_id, task_type, success, attempts=1, error="", started_at=None, duration_s=0.0):
        """
        Record one task outcome.
        Row structure: Session | Account | Task ID | Type | Result | Attempts | Error | Started At | Duration (s)
        """
        started = started_at or datetime.now()
        row = {
            "Session": session or "main",
            "Account": account or "",
            "Task ID": task_id,
            "Type": task_type,
            "Result": "OK" if success else "FAILED",
            "Attempts": attempts,
            "Error": str(error)[:200] if error else "",
            "Started At": started.strftime("%Y-%m-%d %H:%M:%S"),
            "Duration (s)": round(float(duration_s), 2),
        }
        self.records.append(row)
        self._save(row)

    @staticmethod
    def sheet_name(session):
        """Sheet name for a session tag (sanitized for Excel)"""
        name = str(session or "main")
        for char in ['\\', '/', '*', '?', ':', '[', ']']:
            name = name.replace(char, '_')
        return name[:31] or "main"

    def _save(self, row):
        """Append one row; each session gets its own sheet in Excel files"""
        with RunLedger._lock:
            try:
                directory = os.path.dirname(self.ledger_file)
                if directory:
                    os.makedirs(directory, exist_ok=True)

                new_df = pd.DataFrame([row], columns=COLUMNS)

                if self.is_csv:
                    write_header = not os.path.exists(self.ledger_file)
                    new_df.to_csv(self.ledger_file, mode='a', header=write_header, index=False)
                    return

                if os.path.exists(self.ledger_file):
                    all_sheets = pd.read_excel(self.ledger_file, sheet_name=None)
                else:
                    all_sheets = {}

                sheet = self.sheet_name(row["Session"])
                existing_df = all_sheets.get(sheet)
                if existing_df is None or existing_df.empty:
                    all_sheets[sheet] = new_df
                else:
                    all_sheets[sheet] = pd.concat([existing_df, new_df], ignore_index=True)

                with pd.ExcelWriter(self.ledger_file, engine='openpyxl') as writer:
                    for sname, sdata in all_sheets.items():
                        sdata.to_excel(writer, sheet_name=sname, index=False)

            except Exception as e:
                log.log_status(f"⚠️ Error saving run ledger: {e}", 'WARNING')

    def summary(self):
        """Counts of OK / FAILED rows recorded by this instance"""
        if not self.records:
            return {"OK": 0, "FAILED": 0}
        counts = pd.DataFrame(self.records)["Result"].value_counts()
        return {"OK": int(counts.get("OK", 0)), "FAILED": int(counts.get("FAILED", 0))}
