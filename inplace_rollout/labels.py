"""Update-state labels and pure helpers over label maps; nothing here mutates its inputs"""
from enum import Enum

from .models import (
    UpdateState,
    LABEL_CANDIDATE_FOR_UPDATE,
    LABEL_SELECTED_FOR_UPDATE,
    LABEL_UPDATE_SUCCESSFUL,
)


class Signal(str, Enum):
    MARK_CANDIDATE = "mark-candidate"  # controller: machine belongs to an old generation
    SELECT = "select"  # controller or operator: budget granted, agent may drain
    UPDATE_SUCCEEDED = "update-succeeded"  # agent: node finished updating


_SIGNAL_TARGET = {
    Signal.MARK_CANDIDATE: UpdateState.CANDIDATE,
    Signal.SELECT: UpdateState.SELECTED,
    Signal.UPDATE_SUCCEEDED: UpdateState.SUCCESSFUL,
}

_STATE_LABEL = {
    UpdateState.CANDIDATE: LABEL_CANDIDATE_FOR_UPDATE,
    UpdateState.SELECTED: LABEL_SELECTED_FOR_UPDATE,
    UpdateState.SUCCESSFUL: LABEL_UPDATE_SUCCESSFUL,
}


def state_of(labels):
    """Derive the update state carried by a label map"""
    labels = labels or {}
    if labels.get(LABEL_UPDATE_SUCCESSFUL) == "true":
        return UpdateState.SUCCESSFUL
    # the agent only checks for presence of the selected key
    if LABEL_SELECTED_FOR_UPDATE in labels:
        return UpdateState.SELECTED
    if labels.get(LABEL_CANDIDATE_FOR_UPDATE) == "true":
        return UpdateState.CANDIDATE
    return UpdateState.NONE


def next_state(current, signal):
    """Transition function of the update state machine.

    A signal moves the state exactly one step forward. Signals for the current
    or an earlier state, and signals that would skip a state, leave it as is.
    """
    target = _SIGNAL_TARGET[Signal(signal)]
    if target == current + 1:
        return target
    return current


def with_state(labels, state):
    """Return a copy of ``labels`` carrying every mark up to and including ``state``"""
    marks = {_STATE_LABEL[s]: "true" for s in UpdateState if UpdateState.NONE < s <= state}
    return merge_string_maps(labels, marks)


def advance(labels, signal):
    """Apply ``signal`` to a label map. Returns the new labels and the new state."""
    current = state_of(labels)
    new = next_state(current, signal)
    if new == current:
        return dict(labels or {}), current
    return with_state(labels, new), new


def merge_string_maps(*maps):
    """Merge maps left to right; later maps win"""
    merged = {}
    for m in maps:
        if m:
            merged.update(m)
    return merged


def merge_with_overwrite_and_filter(base, old_selector, new_selector):
    """Move a label map from one selector to another.

    For every key of ``old_selector`` the value is taken from ``new_selector``,
    or the key is dropped when the new selector does not have it. Keys of
    ``base`` outside the old selector are kept untouched; keys of the new
    selector that ``base`` lacks are added.
    """
    new_selector = new_selector or {}
    result = dict(base or {})
    for key in old_selector or {}:
        if key in new_selector:
            result[key] = new_selector[key]
        else:
            result.pop(key, None)
    for key, value in new_selector.items():
        result.setdefault(key, value)
    return result


def label_patch(old, new):
    """JSON merge patch fragment turning label map ``old`` into ``new``"""
    patch = dict(new)
    for key in old or {}:
        if key not in new:
            patch[key] = None
    return patch


def format_selector(selector):
    return ",".join(f"{k}={v}" for k, v in sorted((selector or {}).items()))
