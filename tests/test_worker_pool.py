import threading

from mqbackup.jobs import WorkerPool


def test_workers_run_to_completion():
    results = []
    lock = threading.Lock()

    def work(n):
        with lock:
            results.append(n)

    pool = WorkerPool("test", threading.Event())
    for n in range(4):
        pool.spawn(work, n)
    pool.join()

    assert sorted(results) == [0, 1, 2, 3]
    assert pool.fatal is None
    assert not pool.interrupted


def test_first_worker_error_stops_the_others():
    stop = threading.Event()
    pool = WorkerPool("test", stop, join_poll=0.05)

    def boom():
        raise RuntimeError("disk on fire")

    def wait_for_stop():
        stop.wait(5)

    pool.spawn(wait_for_stop)
    pool.spawn(boom)
    pool.join()

    assert stop.is_set()
    assert isinstance(pool.fatal, RuntimeError)
    assert str(pool.fatal) == "disk on fire"


def test_interrupt_sets_stop_event():
    stop = threading.Event()
    pool = WorkerPool("test", stop)
    pool.interrupt()
    assert pool.interrupted
    assert stop.is_set()


def test_worker_threads_are_named_after_pool():
    seen = []
    pool = WorkerPool("drain", threading.Event())
    pool.spawn(lambda: seen.append(threading.current_thread().name))
    pool.join()
    assert seen == ["drain-worker-1"]
