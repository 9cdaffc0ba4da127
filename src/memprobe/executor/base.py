from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional


@dataclass
class ExecSpec:
    cmd: List[str]
    env: Dict[str, str] = field(default_factory=dict)
    workdir: Optional[Path] = None
    timeout_s: Optional[float] = None
