"""Tests for intent classification and the batch-operation heuristic."""

import pytest

from taskbot_kernel.models.routing import BatchOperationType, Intent
from taskbot_kernel.nlu.client import NLUError
from taskbot_kernel.routing.classifier import (
    ClassificationError,
    LLMIntentClassifier,
    RuleBasedIntentClassifier,
    detect_batch_operation,
)

from conftest import FakeNLU


class TestDetectBatchOperation:
    @pytest.mark.parametrize("message,expected", [
        ("delete these", BatchOperationType.DELETE),
        ("Please remove all of them", BatchOperationType.DELETE),
        ("delete that", BatchOperationType.DELETE),
        ("complete that one", BatchOperationType.COMPLETE),
        ("remove it", BatchOperationType.DELETE),
        ("finish those", BatchOperationType.COMPLETE),
        ("Mark all complete", BatchOperationType.COMPLETE),
        ("update them to high priority", BatchOperationType.UPDATE),
    ])
    def test_verb_and_referent(self, message, expected):
        assert detect_batch_operation(message) == expected

    @pytest.mark.parametrize("message", [
        "delete the grocery task",
        "show me these",
        "Delete the call notes",
        "what can you do",
        "Add a task to finish the slides that Bob sent",
        "Delete the draft that I wrote yesterday",
        "update the doc so that it lists owners",
    ])
    def test_no_batch(self, message):
        assert detect_batch_operation(message) is None

    def test_delete_takes_precedence_over_complete(self):
        assert detect_batch_operation("delete all completed ones") == BatchOperationType.DELETE


class TestRuleBasedClassifier:
    def setup_method(self):
        self.classifier = RuleBasedIntentClassifier(clarification_threshold=0.5)

    def test_batch_beats_domain_cues(self):
        decision = self.classifier.classify_text("delete these tasks and meetings")
        assert decision.intent == Intent.TASK
        assert decision.parameters == {"batch_operation": "delete"}

    def test_task(self):
        assert self.classifier.classify_text("Add a task to buy milk").intent == Intent.TASK

    def test_event(self):
        decision = self.classifier.classify_text("Schedule a meeting with Sam tomorrow at 3pm")
        assert decision.intent == Intent.EVENT

    def test_both_requires_task_and_event_cues(self):
        decision = self.classifier.classify_text(
            "Schedule a meeting on Friday and add a task to prepare slides"
        )
        assert decision.intent == Intent.BOTH

    def test_domain_cue_beats_research(self):
        decision = self.classifier.classify_text("Add a task to research the latest CRM tools")
        assert decision.intent == Intent.TASK

    def test_research_trigger(self):
        decision = self.classifier.classify_text("What is the latest news on fusion power?")
        assert decision.intent == Intent.RESEARCH

    def test_definitional_question_is_answer(self):
        decision = self.classifier.classify_text("What is a kanban board?")
        assert decision.intent == Intent.ANSWER
        assert decision.needs_clarification is False

    def test_unclear_message_needs_clarification(self):
        decision = self.classifier.classify_text("hmm okay")
        assert decision.intent == Intent.ANSWER
        assert decision.confidence < 0.5
        assert decision.needs_clarification is True

    @pytest.mark.asyncio
    async def test_async_interface(self):
        decision = await self.classifier.classify("Add a todo: water plants", [])
        assert decision.intent == Intent.TASK


class TestLLMClassifier:
    @pytest.mark.asyncio
    async def test_valid_decision(self):
        nlu = FakeNLU(classifications=[
            {"agentType": "event", "confidence": 0.92, "reasoning": "calendar"},
        ])
        classifier = LLMIntentClassifier(nlu)
        decision = await classifier.classify("book a dentist appointment", [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
        ])
        assert decision.intent == Intent.EVENT
        assert decision.confidence == pytest.approx(0.92)
        assert "book a dentist appointment" in nlu.classify_prompts[0]

    @pytest.mark.asyncio
    async def test_low_confidence_flags_clarification(self):
        nlu = FakeNLU(classifications=[{"agentType": "answer", "confidence": 0.2}])
        decision = await LLMIntentClassifier(nlu, clarification_threshold=0.5).classify("?", [])
        assert decision.needs_clarification is True

    @pytest.mark.asyncio
    async def test_batch_operation_added_to_parameters(self):
        nlu = FakeNLU(classifications=[{"agentType": "task", "confidence": 0.9}])
        decision = await LLMIntentClassifier(nlu).classify("finish all of them", [])
        assert decision.parameters["batch_operation"] == "complete"

    @pytest.mark.asyncio
    async def test_out_of_enum_raises(self):
        nlu = FakeNLU(classifications=[{"agentType": "weather", "confidence": 0.9}])
        with pytest.raises(ClassificationError):
            await LLMIntentClassifier(nlu).classify("is it raining", [])

    @pytest.mark.asyncio
    async def test_service_failure_raises(self):
        nlu = FakeNLU(classifications=[NLUError("HTTP 503")])
        with pytest.raises(ClassificationError):
            await LLMIntentClassifier(nlu).classify("hello", [])
