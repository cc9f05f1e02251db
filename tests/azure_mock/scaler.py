"""Mock cluster scaler."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class MockClusterScaler:
    """Records scale calls; the first ``failures`` calls per deployment raise."""

    failures: int = 0
    calls: list[tuple[str, str, int]] = field(default_factory=list)
    _attempts: dict[str, int] = field(default_factory=dict)

    async def scale(self, namespace: str, name: str, replicas: int) -> None:
        attempt = self._attempts.get(name, 0) + 1
        self._attempts[name] = attempt
        if attempt <= self.failures:
            raise RuntimeError(f"scale of {name} rejected (attempt {attempt})")
        self.calls.append((namespace, name, replicas))

    def scaled(self, name: str) -> int | None:
        """Replica count of the last successful scale of a deployment."""
        for _, deployment, replicas in reversed(self.calls):
            if deployment == name:
                return replicas
        return None
