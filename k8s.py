# k8s.py
from __future__ import annotations

from typing import Dict, List, Sequence

from kubernetes.client.rest import ApiException

from desired import Taint

# conflict, throttling
RETRY_STATUSES = (409, 429)


def is_retryable(exc: BaseException) -> bool:
    """ApiException worth another try: 409, 429 or any 5xx."""
    if not isinstance(exc, ApiException):
        return False
    status = exc.status or 0
    return status in RETRY_STATUSES or status >= 500


def list_node_names(corev1) -> List[str]:
    return [n.metadata.name for n in corev1.list_node().items]


def read_node(corev1, name: str) -> dict:
    return corev1.read_node(name).to_dict()


def missing_labels(node: dict, labels: Dict[str, str]) -> Dict[str, str]:
    current = (node.get("metadata", {}) or {}).get("labels") or {}
    return {k: v for k, v in labels.items() if current.get(k) != v}


def merged_taints(node: dict, taints: Sequence[Taint]) -> List[dict]:
    """Existing taints with ``taints`` laid over them, keyed by (key, effect).

    Returns the existing list unchanged when nothing differs.
    """
    existing = [
        {"key": t.get("key"), "value": t.get("value"), "effect": t.get("effect")}
        for t in ((node.get("spec", {}) or {}).get("taints") or [])
    ]
    out = list(existing)
    for t in taints:
        want = {"key": t.key, "value": t.value or None, "effect": t.effect}
        idx = next((i for i, e in enumerate(out) if e["key"] == t.key and e["effect"] == t.effect), None)
        if idx is None:
            out.append(want)
        elif (out[idx].get("value") or None) != want["value"]:
            out[idx] = want
    return out


def ensure_node_labels(corev1, name: str, labels: Dict[str, str]) -> bool:
    patch = missing_labels(read_node(corev1, name), labels)
    if patch:
        corev1.patch_node(name, {"metadata": {"labels": patch}})
    return bool(patch)


def ensure_node_taints(corev1, name: str, taints: Sequence[Taint]) -> bool:
    node = read_node(corev1, name)
    merged = merged_taints(node, taints)
    if merged == merged_taints(node, ()):
        return False
    corev1.patch_node(name, {"spec": {"taints": merged}})
    return True
