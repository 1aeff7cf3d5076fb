import pytest

from tunmux.intheap import IntHeap


def test_pop_returns_values_in_ascending_order():
    values = [5, -3, 12, 0, 7, 7, -20, 1]
    heap = IntHeap()
    for value in values:
        heap.push(value)
    popped = [heap.pop() for _ in range(len(values))]
    assert popped == sorted(values)


def test_len_tracks_push_and_pop():
    heap = IntHeap()
    heap.push(3)
    heap.push(1)
    assert len(heap) == 2
    heap.pop()
    assert len(heap) == 1


def test_initial_values_are_heapified():
    values = [9, 4, 8, 1]
    heap = IntHeap(values)
    assert heap.pop() == min(values)
    assert len(heap) == len(values) - 1


def test_pop_empty_raises():
    with pytest.raises(IndexError):
        IntHeap().pop()


def test_interleaved_operations_keep_minimum_first():
    heap = IntHeap([10, 20])
    heap.push(15)
    assert heap.pop() == 10
    heap.push(2)
    assert heap.pop() == 2
    assert heap.pop() == 15