"""
End-to-end tests for the processing pipeline: submission, worker pool,
retry classification, timeouts, cancellation and redelivery.
"""

import queue

import pytest

from conftest import ScriptedGenerator, SlowGenerator, StaticGenerator
from mindscroll.config import PipelineConfig
from mindscroll.core import PermanentGenerationError, TransientGenerationError
from mindscroll.jobs import EventType, JobManager, JobStatus, PipelineWorker, load_generator
from mindscroll.learning import LearningManager

TEXT = "Photosynthesis converts light energy into chemical energy in chloroplasts."


@pytest.fixture
def make_manager(pipeline_config):
    """Build started JobManagers and shut them down after the test."""
    managers = []

    def _make(generator, config=None):
        manager = JobManager(config=config or pipeline_config, generator=generator)
        manager.start()
        managers.append(manager)
        return manager

    yield _make

    for manager in managers:
        manager.shutdown(timeout=5)
        manager.close()


def run_job(manager, **kwargs):
    """Submit a text upload and wait for the pipeline to settle."""
    kwargs.setdefault('source_type', 'text')
    kwargs.setdefault('source_ref', TEXT)
    job_id = manager.submit_upload('alice', **kwargs)
    assert manager.drain(timeout=15)
    return manager.get_job_status(job_id)


def test_text_upload_completes(make_manager):
    generator = StaticGenerator()
    manager = make_manager(generator)

    job = run_job(manager, upload_id='upload-1', title='Plants')

    assert job.status == JobStatus.COMPLETED
    assert job.progress == 100
    assert job.attempts_made == 1
    assert job.result['cards_generated'] == 4
    assert job.get_elapsed_time() is not None

    content = manager.learning_storage.get_content(job.result['content_id'])
    assert content.upload_id == 'upload-1'
    assert content.user_id == 'alice'
    assert content.source_type == 'text'

    source_text, source_type, config = generator.calls[0]
    assert source_text == TEXT
    assert source_type == 'text'
    assert config['title'] == 'Plants'
    assert config['sections'] == [{'title': 'Plants', 'order': 1, 'content': TEXT}]


def test_generated_cards_are_studyable(make_manager):
    manager = make_manager(StaticGenerator())
    job = run_job(manager)

    learning = LearningManager(storage=manager.learning_storage)
    session = learning.get_session('alice', job.result['content_id'])
    assert [card.title for card in session.cards] == ['F1', 'F2', 'Q1', 'S1']


def test_empty_source_fails_without_retry(make_manager):
    generator = StaticGenerator()
    manager = make_manager(generator)

    job = run_job(manager, source_ref='   ')

    assert job.status == JobStatus.FAILED
    assert job.attempts_made == 1
    assert 'No readable text' in job.error
    assert generator.calls == []


def test_transient_failures_are_retried(make_manager):
    generator = ScriptedGenerator([TransientGenerationError("rate limited")] * 2)
    manager = make_manager(generator)

    job = run_job(manager)

    assert job.status == JobStatus.COMPLETED
    assert job.attempts_made == 3
    assert generator.calls == 3


def test_transient_failures_exhaust_attempts(make_manager):
    generator = ScriptedGenerator([TransientGenerationError("service unavailable")] * 5)
    manager = make_manager(generator)

    job = run_job(manager)

    assert job.status == JobStatus.FAILED
    assert job.attempts_made == 3
    assert job.error == "service unavailable"
    assert generator.calls == 3


def test_permanent_failure_is_not_retried(make_manager):
    generator = ScriptedGenerator([PermanentGenerationError("content policy rejection")])
    manager = make_manager(generator)

    job = run_job(manager)

    assert job.status == JobStatus.FAILED
    assert job.attempts_made == 1
    assert generator.calls == 1


def test_malformed_generator_output_fails(make_manager):
    manager = make_manager(StaticGenerator({'title': 'Nothing', 'chapters': []}))

    job = run_job(manager)

    assert job.status == JobStatus.FAILED
    assert job.attempts_made == 1
    assert 'no cards' in job.error


def test_dict_output_is_accepted(make_manager):
    output = {
        'title': 'Generated',
        'cards': [
            {'type': 'flashcard', 'title': 'Light', 'front': 'What drives it?', 'back': 'Light.'},
            {'type': 'summary', 'title': 'Recap', 'body': 'Plants make sugar.'},
        ],
    }
    manager = make_manager(StaticGenerator(output))

    job = run_job(manager)

    assert job.status == JobStatus.COMPLETED
    assert job.result['cards_generated'] == 2
    assert job.result['title'] == 'Generated'


def test_generation_timeout_is_transient(make_manager, pipeline_config, temp_dir):
    config = PipelineConfig(
        data_dir=str(temp_dir / "timeout"),
        concurrency=1,
        poll_interval=0.05,
        max_attempts=1,
        backoff_type='fixed',
        backoff_delay=0.0,
        generation_timeout=0.1,
    )
    manager = make_manager(SlowGenerator(seconds=1.0), config=config)

    job = run_job(manager)

    assert job.status == JobStatus.FAILED
    assert job.error == "Card generation timed out after 0.1s"


def test_retry_after_timeout_reaches_generator(make_manager, temp_dir):
    config = PipelineConfig(
        data_dir=str(temp_dir / "hung"),
        concurrency=1,
        poll_interval=0.05,
        max_attempts=3,
        backoff_type='fixed',
        backoff_delay=0.0,
        generation_timeout=0.3,
    )
    generator = SlowGenerator(seconds=1.5, slow_calls=1)
    manager = make_manager(generator, config=config)

    job = run_job(manager)

    assert job.status == JobStatus.COMPLETED
    assert job.attempts_made == 2
    assert generator.calls == 2


def test_generation_options_are_passed_through(make_manager):
    generator = StaticGenerator()
    manager = make_manager(generator)

    run_job(manager, title='Plants', generation_config={'language': 'fi', 'title': 'Kasvit'})

    _, _, config = generator.calls[0]
    assert config['language'] == 'fi'
    assert config['title'] == 'Kasvit'
    assert len(config['sections']) == 1


def test_redelivery_reuses_existing_content(make_manager):
    generator = StaticGenerator()
    manager = make_manager(generator)

    first = run_job(manager, upload_id='upload-dup')
    second = run_job(manager, upload_id='upload-dup')

    assert first.status == second.status == JobStatus.COMPLETED
    assert first.result['content_id'] == second.result['content_id']
    assert len(generator.calls) == 1


def test_retry_supersedes_failed_job(make_manager):
    generator = ScriptedGenerator([PermanentGenerationError("bad output")])
    manager = make_manager(generator)

    failed = run_job(manager, upload_id='upload-retry')
    assert failed.status == JobStatus.FAILED
    assert manager.retry_job(failed.job_id) is not None
    assert manager.drain(timeout=15)

    jobs = manager.list_jobs_for_upload('upload-retry')
    assert [job.status for job in jobs] == [JobStatus.FAILED, JobStatus.COMPLETED]
    assert jobs[0].job_id == failed.job_id

    # Only failed jobs can be retried
    assert manager.retry_job(jobs[1].job_id) is None
    assert manager.retry_job('missing') is None


def test_cancel_delayed_job(make_manager):
    generator = StaticGenerator()
    manager = make_manager(generator)

    job_id = manager.submit_upload('alice', 'text', TEXT, delay=60)
    assert manager.cancel_job(job_id)
    assert not manager.cancel_job(job_id)
    assert manager.drain(timeout=15)

    job = manager.get_job_status(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error == "Cancelled"
    assert generator.calls == []


def test_progress_milestones(make_manager):
    manager = make_manager(StaticGenerator())
    events = manager.queue.subscribe()

    job = run_job(manager)

    seen = []
    while True:
        try:
            event = events.get_nowait()
        except queue.Empty:
            break
        if event.job_id == job.job_id:
            seen.append((event.type, event.progress))

    assert seen == [
        (EventType.ENQUEUED, None),
        (EventType.STARTED, None),
        (EventType.PROGRESSED, 25),
        (EventType.PROGRESSED, 75),
        (EventType.PROGRESSED, 90),
        (EventType.COMPLETED, 100),
    ]


def test_job_logs_are_recorded(make_manager):
    manager = make_manager(StaticGenerator())
    job = run_job(manager)

    messages = [entry['message'] for entry in manager.get_job_logs(job.job_id)]
    assert any(message.startswith("Upload submitted") for message in messages)
    assert any(message.startswith("Completed") for message in messages)


def test_cancelled_lease_is_discarded(work_queue, learning_storage):
    generator = StaticGenerator()
    worker = PipelineWorker(work_queue, learning_storage, generator)

    work_queue.enqueue('process-text-upload', {
        'upload_id': 'u-cancel', 'user_id': 'alice', 'source_type': 'text', 'source_ref': TEXT,
    })
    leased = work_queue.dequeue()
    work_queue.cancel(leased.job_id)

    assert worker.process(leased) == 'lost'
    assert generator.calls == []
    assert learning_storage.get_content_for_upload('u-cancel') is None


def test_submit_validation(make_manager, temp_dir):
    manager = make_manager(StaticGenerator())

    with pytest.raises(ValueError):
        manager.submit_upload('alice', 'docx', 'file.docx')
    with pytest.raises(ValueError):
        manager.submit_upload('alice', 'url', 'ftp://example.com/file')
    with pytest.raises(FileNotFoundError):
        manager.submit_upload('alice', 'pdf', str(temp_dir / 'missing.pdf'))


def test_load_generator():
    generator = load_generator('conftest:StaticGenerator')
    assert isinstance(generator, StaticGenerator)

    with pytest.raises(ValueError):
        load_generator('conftest')
    with pytest.raises(ValueError):
        load_generator('conftest:make_card_set')
