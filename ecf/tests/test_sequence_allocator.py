"""Tests for fiscal number allocation: format, monotonic counters, CAS conflicts."""

import threading
from unittest.mock import patch

from django.db import connection
from django.test import TestCase, TransactionTestCase

from ecf.errors import AllocationConflict, AllocationFailed
from ecf.models import SequenceCounter
from ecf.services import sequence_allocator
from ecf.services.sequence_allocator import allocate, format_fiscal_number, is_valid_fiscal_number, peek


class FiscalNumberFormatTests(TestCase):
    def test_format_pads_sequence(self):
        self.assertEqual(format_fiscal_number("01", 1), "E0100000001")
        self.assertEqual(format_fiscal_number("31", 12345678), "E3112345678")

    def test_format_rejects_out_of_range(self):
        with self.assertRaises(ValueError):
            format_fiscal_number("01", 0)
        with self.assertRaises(ValueError):
            format_fiscal_number("01", 100_000_000)

    def test_document_type_must_be_two_digits(self):
        for bad in ("1", "001", "AB", ""):
            with self.assertRaises(ValueError):
                allocate(bad)

    def test_is_valid_fiscal_number(self):
        self.assertTrue(is_valid_fiscal_number("E0100000001"))
        self.assertFalse(is_valid_fiscal_number("B0100000001"))
        self.assertFalse(is_valid_fiscal_number("E010000001"))
        self.assertFalse(is_valid_fiscal_number(""))


class AllocateTests(TestCase):
    def test_first_allocation_is_one(self):
        self.assertEqual(peek("01"), 1)
        self.assertEqual(allocate("01"), "E0100000001")
        self.assertEqual(peek("01"), 2)

    def test_sequential_allocations_are_consecutive(self):
        numbers = [allocate("01") for _ in range(5)]
        self.assertEqual(numbers, [f"E01{i:08d}" for i in range(1, 6)])

    def test_counters_are_per_document_type(self):
        allocate("01")
        allocate("01")
        self.assertEqual(allocate("31"), "E3100000001")
        self.assertEqual(peek("01"), 3)

    def test_peek_does_not_mutate(self):
        peek("02")
        peek("02")
        self.assertFalse(SequenceCounter.objects.filter(document_type="02").exists())

    def test_lost_race_retries_with_next_value(self):
        """A concurrent writer advancing the counter between read and CAS forces a retry."""
        real_read = sequence_allocator._read_counter
        reads = []

        def racing_read(document_type):
            value = real_read(document_type)
            if not reads:
                SequenceCounter.objects.filter(document_type=document_type).update(next_value=value + 1)
            reads.append(value)
            return value

        with patch.object(sequence_allocator, "_read_counter", side_effect=racing_read), \
                patch.object(sequence_allocator.time, "sleep") as sleep:
            number = allocate("01")

        self.assertEqual(reads, [1, 2])
        self.assertEqual(number, "E0100000002")
        self.assertEqual(peek("01"), 3)
        sleep.assert_called_once()

    def test_gives_up_after_bounded_retries(self):
        with patch.object(sequence_allocator, "_try_allocate", side_effect=AllocationConflict("moved")) as try_allocate, \
                patch.object(sequence_allocator.time, "sleep"):
            with self.assertRaises(AllocationFailed):
                allocate("01")
        self.assertEqual(try_allocate.call_count, sequence_allocator._MAX_SEQUENCE_RETRIES)

    def test_backoff_within_bounds(self):
        for attempt in range(1, 8):
            delay = sequence_allocator._backoff(attempt)
            self.assertGreaterEqual(delay, 0.010)
            self.assertLessEqual(delay, 0.100)


class ConcurrentAllocateTests(TransactionTestCase):
    """Real threads, each with its own database connection."""

    threads = 4
    per_thread = 5

    def test_parallel_allocations_are_distinct_and_increasing(self):
        allocate("01")
        per_worker = [[] for _ in range(self.threads)]
        errors = []
        start = threading.Barrier(self.threads)

        def worker(results):
            try:
                start.wait()
                for _ in range(self.per_thread):
                    results.append(allocate("01"))
            except Exception as e:
                errors.append(e)
            finally:
                connection.close()

        threads = [threading.Thread(target=worker, args=(results,)) for results in per_worker]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(errors, [])
        for results in per_worker:
            sequences = [int(n[3:]) for n in results]
            self.assertEqual(sequences, sorted(set(sequences)))

        everything = [n for results in per_worker for n in results]
        self.assertEqual(len(everything), len(set(everything)))
        self.assertEqual(sorted(int(n[3:]) for n in everything), list(range(2, 2 + self.threads * self.per_thread)))
        self.assertEqual(peek("01"), 2 + self.threads * self.per_thread)
