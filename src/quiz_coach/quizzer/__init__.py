from .accumulator import (
    MAX_ATTEMPTS,
    AccumulatingGenerator,
    build_attempt_context,
    merge_unique,
)
from .analysis import analyze_question
from .completion import (
    CompletionService,
    GeminiCompletionService,
    OpenAICompletionService,
    SafetyPolicy,
    build_completion_service,
    validate_key,
)
from .diagnosis import (
    DiagnosisDispatcher,
    DiagnosisRequest,
    LocalDiagnosisBackend,
    infer_tags,
)
from .flow import FlowOutcome, FlowState, QuizFlowController
from .generation import GenerationClient, strip_code_fence
from .models import (
    Diagnosis,
    DiagnosisError,
    GenerationFailure,
    GenerationRequest,
    GenerationSuccess,
    ItemKind,
    Mistake,
    PracticeSession,
    QuestionResult,
    QuizAnalysis,
    QuizItem,
)
from .recorder import CompletedQuiz, RecordOutcome, SessionRecorder
from .session import QuizSessionResult, run_quiz_session
from .store import DocumentStore
from .sync import DiagnosisSync, merge_diagnoses

__all__ = [
    "MAX_ATTEMPTS",
    "AccumulatingGenerator",
    "build_attempt_context",
    "merge_unique",
    "analyze_question",
    "CompletionService",
    "GeminiCompletionService",
    "OpenAICompletionService",
    "SafetyPolicy",
    "build_completion_service",
    "validate_key",
    "DiagnosisDispatcher",
    "DiagnosisRequest",
    "LocalDiagnosisBackend",
    "infer_tags",
    "FlowOutcome",
    "FlowState",
    "QuizFlowController",
    "GenerationClient",
    "strip_code_fence",
    "Diagnosis",
    "DiagnosisError",
    "GenerationFailure",
    "GenerationRequest",
    "GenerationSuccess",
    "ItemKind",
    "Mistake",
    "PracticeSession",
    "QuestionResult",
    "QuizAnalysis",
    "QuizItem",
    "CompletedQuiz",
    "RecordOutcome",
    "SessionRecorder",
    "QuizSessionResult",
    "run_quiz_session",
    "DocumentStore",
    "DiagnosisSync",
    "merge_diagnoses",
]
