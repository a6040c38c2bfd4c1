import logging
import subprocess
from pathlib import Path
from typing import List, Tuple

from cbs.errors import CargoCommandFailed


class CargoRunner:
    """Runs the cargo commands needed to settle a patched lock file."""

    def __init__(self, executable: str = "cargo"):
        self.executable = executable
        self.logger = logging.getLogger(__name__)

    def _run_cargo_command(self, args: List[str], cwd: Path) -> Tuple[bool, str]:
        """Run a cargo command and return success status and output (stderr on failure)."""
        cmd = [self.executable, *args]
        try:
            result = subprocess.run(cmd, cwd=str(cwd), capture_output=True, text=True, check=True)
            return True, result.stdout
        except subprocess.CalledProcessError as e:
            self.logger.error(f"Cargo command failed: {' '.join(cmd)}, Error: {e.stderr}")
            return False, e.stderr.strip() if e.stderr else str(e)

    def update(self, cwd: Path, packages: List[str]) -> None:
        """Re-resolve ``packages`` (``name:version`` specs) in the lock file of ``cwd``."""
        if not packages:
            self.logger.info(f"No workspace crates to update in {cwd}")
            return

        args = ["update"]
        for package in packages:
            args.extend(["-p", package])

        self.logger.info(f"Updating local crates after patching: {' '.join(packages)}")
        success, output = self._run_cargo_command(args, cwd)
        if not success:
            raise CargoCommandFailed([self.executable, *args], str(cwd), output)
