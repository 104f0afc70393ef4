from datetime import timedelta
from pathlib import Path
from typing import Iterator, List, Optional, Union

import yaml

from .repositories import PivotRepository
from .schemas import Pivot, PivotSuggestions, utc_now


class PivotMatcher:
    """Looks up scripted coaching prompts for a weak step.

    Read-only. Calling it again with the same key yields the same prompts
    unless the pivot library changed in between.
    """

    def __init__(self, repository: PivotRepository, limit: int = 3, org_id: Optional[str] = None):
        self.repository = repository
        self.limit = limit
        self.org_id = org_id

    def iter_prompts(self, step_key: str) -> Iterator[str]:
        for pivot in self.repository.list_for_step(step_key, org_id=self.org_id):
            yield pivot.prompt

    def suggest(self, step_key: str) -> List[str]:
        """Up to ``limit`` prompts; an empty list when the step has none"""
        return self.lookup(step_key).prompts

    def lookup(self, step_key: str) -> PivotSuggestions:
        prompts = list(self.iter_prompts(step_key))
        return PivotSuggestions(
            step_key=step_key,
            prompts=prompts[:self.limit],
            more_count=max(len(prompts) - self.limit, 0),
        )


def load_pivot_library(path: Union[str, Path]) -> List[Pivot]:
    """Read ``{step_key: [prompt, ...]}`` YAML into pivots in file order"""
    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Pivot library {path} must map step keys to prompt lists")

    # Stagger timestamps so creation-time ordering matches file order
    base = utc_now()
    pivots = []
    for step_key, prompts in data.items():
        for prompt in prompts or []:
            pivots.append(Pivot(
                step_key=str(step_key),
                prompt=str(prompt).strip(),
                created_at=base + timedelta(microseconds=len(pivots)),
            ))
    return pivots


def seed_pivots(repository: PivotRepository, path: Union[str, Path]) -> int:
    """Load the library into an empty repository; returns the number added"""
    if repository.count():
        return 0
    pivots = load_pivot_library(path)
    for pivot in pivots:
        repository.add(pivot)
    return len(pivots)
