"""
Test: Grading pipeline: gates, per-label isolation, usage, regrade tokens.
"""
import threading
import time

import pytest

from handgrade.errors import QuotaExceededError, RateLimitedError
from handgrade.services.grading_pipeline import (
    CANCELLED_MESSAGE,
    DEADLINE_MESSAGE,
    MODE_FREE,
    MODE_NEW,
    MODE_NONE,
    GradingPipeline,
    GradingRequest,
)
from handgrade.services.grading_service import GradingStage
from handgrade.services.rate_limit import GradingRateGate, SlidingWindowRateLimiter
from handgrade.services.regrade_tokens import RegradeTokenService
from handgrade.services.transcription import PassThroughTranscriber, StrictTranscriber

from conftest import FakeModelClient, FakeUsageStore, grading_json, ocr_json


def by_label(responses):
    """Responder that answers according to the label named in the prompt."""
    def respond(prompt):
        for label, response in responses.items():
            if f'"{label}"' in prompt:
                if isinstance(response, Exception):
                    raise response
                return response
        raise AssertionError(f"no scripted response for prompt: {prompt[:80]}")
    return respond


def make_pipeline(grading_client, usage_store, token_service, ocr_client=None, rate_gate=None,
                  label_concurrency=1):
    transcriber = StrictTranscriber(ocr_client) if ocr_client is not None else PassThroughTranscriber()
    return GradingPipeline(
        transcriber=transcriber,
        grading_stage=GradingStage(grading_client),
        usage_store=usage_store,
        token_service=token_service,
        rate_gate=rate_gate,
        label_concurrency=label_concurrency,
    )


def make_request(files, labels=("Q1",), **kwargs):
    kwargs.setdefault("user_id", "user-1")
    kwargs.setdefault("fingerprint", "device-1")
    return GradingRequest(labels=list(labels), files=files, **kwargs)


class TestPartialFailure:
    def test_one_label_fails_others_succeed(self, standard_files, usage_store, token_service):
        client = FakeModelClient(responder=by_label({
            "Q1": grading_json(score=80),
            "Q2": "I'm sorry, I cannot grade this.",
        }))
        pipeline = make_pipeline(client, usage_store, token_service)
        response = pipeline.grade(make_request(standard_files, labels=["Q1", "Q2"]))

        q1, q2 = response.results
        assert q1.label == "Q1" and q1.result.score == 80 and q1.error is None
        assert q2.label == "Q2" and q2.result is None and q2.error
        assert [meta["label"] for _, meta in usage_store.increments] == ["Q1"]
        assert q1.regrade_mode == MODE_NEW and q1.regrade_remaining == 2
        assert q2.regrade_mode == MODE_NONE and q2.regrade_token is None

    def test_results_keep_label_order_when_parallel(self, standard_files, usage_store, token_service):
        labels = ["Q1", "Q2", "Q3", "Q4"]
        client = FakeModelClient(responder=by_label({label: grading_json(score=70) for label in labels}))
        pipeline = make_pipeline(client, usage_store, token_service, label_concurrency=3)
        response = pipeline.grade(make_request(standard_files, labels=labels))
        assert [o.label for o in response.results] == labels
        assert len(usage_store.increments) == 4

    def test_timeout_is_a_label_error(self, standard_files, usage_store, token_service):
        import time
        client = FakeModelClient(responder=lambda prompt: time.sleep(0.5) or grading_json())
        pipeline = make_pipeline(client, usage_store, token_service)
        pipeline.grading_stage.timeout_seconds = 0.05
        outcome = pipeline.grade(make_request(standard_files)).results[0]
        assert "timed out" in outcome.error
        assert usage_store.increments == []

    def test_increment_failure_keeps_result(self, standard_files, token_service):
        store = FakeUsageStore(fail_increment=True)
        client = FakeModelClient([grading_json(score=90)])
        response = make_pipeline(client, store, token_service).grade(make_request(standard_files))
        assert response.results[0].result.score == 90


class TestGates:
    def test_quota_refusal_blocks_before_model_call(self, standard_files, token_service):
        store = FakeUsageStore(allowed=False)
        client = FakeModelClient()
        pipeline = make_pipeline(client, store, token_service, ocr_client=FakeModelClient())
        with pytest.raises(QuotaExceededError) as exc:
            pipeline.grade(make_request(standard_files))
        assert exc.value.to_dict()["requirePlan"] is True
        assert client.calls == []

    def test_rate_limit_blocks_whole_request(self, standard_files, usage_store, token_service):
        gate = GradingRateGate(SlidingWindowRateLimiter(5, 60), SlidingWindowRateLimiter(1, 10))
        client = FakeModelClient(responder=lambda prompt: grading_json())
        pipeline = make_pipeline(client, usage_store, token_service, rate_gate=gate)
        pipeline.grade(make_request(standard_files))
        with pytest.raises(RateLimitedError) as exc:
            pipeline.grade(make_request(standard_files))
        assert exc.value.retry_after >= 1
        assert len(client.calls) == 1

    def test_token_covered_labels_skip_quota_check(self, standard_files, token_service):
        store = FakeUsageStore(allowed=False)
        token = token_service.issue("user-1", "Q1", "device-1", remaining=2)
        client = FakeModelClient([grading_json(score=60)])
        pipeline = make_pipeline(client, store, token_service)
        response = pipeline.grade(make_request(standard_files, regrade_tokens={"Q1": token}))
        assert response.results[0].result.score == 60
        assert store.can_use_calls == []
        assert store.increments == []

    def test_mixed_request_checks_quota(self, standard_files, token_service):
        store = FakeUsageStore(allowed=False)
        token = token_service.issue("user-1", "Q1", "device-1", remaining=2)
        pipeline = make_pipeline(FakeModelClient(), store, token_service)
        with pytest.raises(QuotaExceededError):
            pipeline.grade(make_request(standard_files, labels=["Q1", "Q2"], regrade_tokens={"Q1": token}))


class TestRegradeTokenFlow:
    def test_two_free_regrades_then_paid(self, standard_files, usage_store, token_service):
        client = FakeModelClient(responder=lambda prompt: grading_json(score=70))
        pipeline = make_pipeline(client, usage_store, token_service)

        first = pipeline.grade(make_request(standard_files)).results[0]
        assert (first.regrade_mode, first.regrade_remaining) == (MODE_NEW, 2)
        assert len(usage_store.increments) == 1

        second = pipeline.grade(make_request(standard_files, regrade_tokens={"Q1": first.regrade_token})).results[0]
        assert (second.regrade_mode, second.regrade_remaining) == (MODE_FREE, 1)

        third = pipeline.grade(make_request(standard_files, regrade_tokens={"Q1": second.regrade_token})).results[0]
        assert (third.regrade_mode, third.regrade_remaining) == (MODE_FREE, 0)
        assert len(usage_store.increments) == 1

        # An exhausted token falls through to the paid path
        fourth = pipeline.grade(make_request(standard_files, regrade_tokens={"Q1": third.regrade_token})).results[0]
        assert (fourth.regrade_mode, fourth.regrade_remaining) == (MODE_NEW, 2)
        assert len(usage_store.increments) == 2
        assert len(usage_store.can_use_calls) == 2

    def test_token_from_other_device_is_paid(self, standard_files, usage_store, token_service):
        token = token_service.issue("user-1", "Q1", "device-1", remaining=2)
        client = FakeModelClient([grading_json()])
        pipeline = make_pipeline(client, usage_store, token_service)
        outcome = pipeline.grade(make_request(standard_files, fingerprint="device-2",
                                              regrade_tokens={"Q1": token})).results[0]
        assert outcome.regrade_mode == MODE_NEW
        assert len(usage_store.increments) == 1

    def test_failed_free_regrade_issues_no_token(self, standard_files, usage_store, token_service):
        token = token_service.issue("user-1", "Q1", "device-1", remaining=2)
        client = FakeModelClient(["not json"])
        pipeline = make_pipeline(client, usage_store, token_service)
        outcome = pipeline.grade(make_request(standard_files, regrade_tokens={"Q1": token})).results[0]
        assert outcome.error
        assert outcome.regrade_token is None
        assert outcome.regrade_mode == MODE_NONE
        assert usage_store.increments == []

    def test_tokens_disabled(self, standard_files, usage_store):
        service = RegradeTokenService("")
        client = FakeModelClient([grading_json()])
        outcome = make_pipeline(client, usage_store, service).grade(make_request(standard_files)).results[0]
        assert outcome.result is not None
        assert outcome.regrade_token is None
        assert outcome.regrade_mode == MODE_NONE
        assert len(usage_store.can_use_calls) == 1


class TestTranscription:
    def test_transcription_feeds_grading(self, standard_files, usage_store, token_service):
        ocr = FakeModelClient([ocr_json("変化は難しい。")])
        client = FakeModelClient([grading_json(recognized_text="Change is hard, the author says.")])
        pipeline = make_pipeline(client, usage_store, token_service, ocr_client=ocr)
        outcome = pipeline.grade(make_request(standard_files)).results[0]

        assert outcome.result.recognized_text == "変化は難しい。"
        assert "変化は難しい。" in client.calls[0]["prompt"]
        # Only the student answer goes to transcription
        assert len([p for p in ocr.calls[0]["parts"] if hasattr(p, "data")]) == 1

    def test_confirmed_text_skips_transcription(self, standard_files, usage_store, token_service):
        ocr = FakeModelClient()
        client = FakeModelClient([grading_json()])
        pipeline = make_pipeline(client, usage_store, token_service, ocr_client=ocr)
        outcome = pipeline.grade(make_request(standard_files, confirmed_texts={"Q1": "確認済みの答え"})).results[0]
        assert ocr.calls == []
        assert outcome.result.recognized_text == "確認済みの答え"

    def test_transcription_failure_falls_back_to_images(self, standard_files, usage_store, token_service):
        ocr = FakeModelClient(["garbage"])
        client = FakeModelClient([grading_json(recognized_text="read from image")])
        pipeline = make_pipeline(client, usage_store, token_service, ocr_client=ocr)
        outcome = pipeline.grade(make_request(standard_files)).results[0]
        assert outcome.result.recognized_text == "read from image"
        assert "from the attached images" in client.calls[0]["prompt"]

    def test_strictness_is_normalized(self, standard_files, usage_store, token_service):
        client = FakeModelClient([grading_json()])
        pipeline = make_pipeline(client, usage_store, token_service)
        outcome = pipeline.grade(make_request(standard_files, strictness="harsh")).results[0]
        assert outcome.strictness == "standard"


class TestCancellation:
    def test_cancelled_labels_never_call_model(self, standard_files, usage_store, token_service):
        cancel = threading.Event()

        def respond(prompt):
            cancel.set()
            return grading_json()

        client = FakeModelClient(responder=respond)
        pipeline = make_pipeline(client, usage_store, token_service)
        response = pipeline.grade(make_request(standard_files, labels=["Q1", "Q2", "Q3"]), cancel_event=cancel)

        assert response.results[0].result is not None
        assert [o.error for o in response.results[1:]] == [CANCELLED_MESSAGE, CANCELLED_MESSAGE]
        assert len(client.calls) == 1
        assert len(usage_store.increments) == 1


class ManualClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestRequestDeadline:
    def _pipeline(self, client, usage_store, token_service, timeout, clock=time.monotonic):
        return GradingPipeline(
            transcriber=PassThroughTranscriber(),
            grading_stage=GradingStage(client),
            usage_store=usage_store,
            token_service=token_service,
            request_timeout_seconds=timeout,
            clock=clock,
        )

    def test_labels_after_deadline_are_skipped(self, standard_files, usage_store, token_service):
        clock = ManualClock()

        def respond(prompt):
            clock.now += 60
            return grading_json()

        client = FakeModelClient(responder=respond)
        pipeline = self._pipeline(client, usage_store, token_service, 100, clock=clock)
        response = pipeline.grade(make_request(standard_files, labels=["Q1", "Q2", "Q3"]))

        assert [o.error for o in response.results] == [None, None, DEADLINE_MESSAGE]
        assert response.results[2].regrade_token is None
        assert len(client.calls) == 2
        assert len(usage_store.increments) == 2

    def test_model_call_capped_at_remaining_budget(self, standard_files, usage_store, token_service):
        def slow(prompt):
            time.sleep(0.5)
            return grading_json()

        client = FakeModelClient(responder=slow)
        pipeline = self._pipeline(client, usage_store, token_service, 0.05)
        started = time.monotonic()
        outcome = pipeline.grade(make_request(standard_files)).results[0]

        assert time.monotonic() - started < 0.4
        assert "timed out" in outcome.error
        assert usage_store.increments == []

    def test_budget_spent_by_transcription(self, standard_files, usage_store, token_service):
        clock = ManualClock()

        def slow_ocr(prompt):
            clock.now += 200
            return ocr_json("text")

        grading = FakeModelClient([grading_json()])
        pipeline = GradingPipeline(
            transcriber=StrictTranscriber(FakeModelClient(responder=slow_ocr)),
            grading_stage=GradingStage(grading),
            usage_store=usage_store,
            token_service=token_service,
            request_timeout_seconds=100,
            clock=clock,
        )
        outcome = pipeline.grade(make_request(standard_files)).results[0]
        assert outcome.error == DEADLINE_MESSAGE
        assert grading.calls == []
        assert usage_store.increments == []


class TestIncompleteResults:
    @pytest.mark.parametrize("text", ["読み取れませんでした", "〓〓〓〓〓〓〓〓"])
    def test_placeholder_text_is_not_billed(self, standard_files, usage_store, token_service, text):
        client = FakeModelClient([grading_json(score=80, recognized_text=text)])
        outcome = make_pipeline(client, usage_store, token_service).grade(make_request(standard_files)).results[0]
        assert outcome.result is None
        assert "recognized_text" in outcome.error
        assert outcome.regrade_mode == MODE_NONE
        assert usage_store.increments == []

    def test_placeholder_transcription_is_not_billed(self, standard_files, usage_store, token_service):
        client = FakeModelClient([grading_json(score=80)])
        pipeline = make_pipeline(client, usage_store, token_service, ocr_client=FakeModelClient([ocr_json("〓〓〓〓〓〓〓〓")]))
        outcome = pipeline.grade(make_request(standard_files)).results[0]
        assert outcome.result is None
        assert usage_store.increments == []

class TestResponseShape:
    def test_to_dict(self, standard_files, usage_store, token_service):
        client = FakeModelClient([grading_json(score=100)])
        data = make_pipeline(client, usage_store, token_service).grade(make_request(standard_files)).to_dict()
        assert data["status"] == "success"
        assert set(data["results"][0]) == {"label", "result", "error", "strictness", "regradeToken",
                                           "regradeRemaining", "regradeMode"}
        assert data["usageInfo"]["remainingCount"] == 9
