"""
Knowledge-aware course generation.

Retrieves institutional plan and guideline chunks, asks the model for a
course structure as JSON and validates it. Malformed output or a provider
failure yields a CourseGenerationResult carrying a retry message; nothing
is raised. Persisting the course is up to the caller.
"""
from typing import List, Optional

from pydantic import ValidationError

from app.core.logging import get_logger
from app.services.ai.audit import DecisionLogger
from app.services.ai.engine import ProviderRegistry
from app.services.ai.json_output import extract_json
from app.services.ai.schema import (
    ChatMessage,
    CourseGenerationResult,
    DecisionLog,
    GeneratedCourse,
    KnowledgeChunk,
    Sensitivity,
)
from app.services.ai.vector_search import KnowledgeRetriever

logger = get_logger(__name__)

PLAN_SEARCH_LIMIT = 5
GUIDELINE_SEARCH_LIMIT = 3
GENERATION_FAILED_MESSAGE = (
    "Failed to generate course structure. Please try again with a more specific description."
)

COURSE_JSON_SHAPE = """{
  "title": "string",
  "description": "string",
  "level": "beginner|intermediate|advanced",
  "duration_minutes": number,
  "modules": [
    {
      "title": "string",
      "description": "string",
      "order_index": number,
      "lessons": [
        {
          "title": "string",
          "content": "detailed lesson content with instructions and exercises",
          "duration_minutes": number,
          "order_index": number
        }
      ]
    }
  ]
}"""


def build_course_system_prompt(plan: List[KnowledgeChunk], guidelines: List[KnowledgeChunk]) -> str:
    knowledge = "\n\n".join(
        [f"[INTERNSHIP PLAN] {c.content}" for c in plan]
        + [f"[GUIDELINES] {c.content}" for c in guidelines]
    )
    sections = [
        "You are a curriculum designer for a professional internship program.\n"
        "Generate course structures that align with institutional standards."
    ]
    if knowledge:
        sections.append(f"INSTITUTIONAL KNOWLEDGE:\n{knowledge}")
    sections.append(
        "RULES:\n"
        "- Course content must align with internship plan standards\n"
        "- Ensure realistic progression from beginner to advanced\n"
        "- Include practical exercises in every module\n"
        "- Duration estimates must be reasonable\n"
        "- Every module needs measurable outcomes"
    )
    sections.append(f"Respond ONLY with valid JSON matching this structure:\n{COURSE_JSON_SHAPE}")
    return "\n\n".join(sections)


class CourseGenerator:
    def __init__(
        self,
        retriever: KnowledgeRetriever,
        registry: ProviderRegistry,
        decision_logger: DecisionLogger,
    ):
        self.retriever = retriever
        self.registry = registry
        self.decision_logger = decision_logger

    async def generate_course(self, prompt: str, triggered_by: Optional[str] = None) -> CourseGenerationResult:
        plan = await self.retriever.search_global(
            f"internship plan structure curriculum {prompt}",
            limit=PLAN_SEARCH_LIMIT,
        )
        guidelines = await self.retriever.search_global(
            f"learning guidelines expectations {prompt}",
            limit=GUIDELINE_SEARCH_LIMIT,
        )

        try:
            result = await self.registry.run(
                [ChatMessage(role="user", content=f"Generate a course: {prompt}")],
                system_prompt=build_course_system_prompt(plan, guidelines),
                sensitivity=Sensitivity.LOW,
                task_type="course_generation",
            )
            course = GeneratedCourse.model_validate(extract_json(result.text))
        except (ValueError, ValidationError) as e:
            logger.warning("course_generation_unparseable", error=str(e), error_type=type(e).__name__)
            return CourseGenerationResult(error=GENERATION_FAILED_MESSAGE)
        except Exception as e:
            logger.error("course_generation_failed", error=str(e), error_type=type(e).__name__)
            return CourseGenerationResult(error=GENERATION_FAILED_MESSAGE)

        # a chunk can match both searches
        references = list(dict.fromkeys(c.id for c in plan + guidelines))
        course = course.model_copy(update={"knowledge_references": references})

        await self.decision_logger.record(DecisionLog(
            action_type="course_generated",
            input_summary=prompt,
            output_summary=f"Generated: {course.title} ({len(course.modules)} modules)",
            full_response=course.model_dump_json(),
            source_chunk_ids=references,
            authority_layers_used=sorted({f"Layer1:{c.doc_type}" for c in plan + guidelines}),
            triggered_by=triggered_by,
            is_autonomous=triggered_by is None,
            model_used=result.model or result.provider,
            token_count=result.usage.total_tokens,
        ))

        logger.info(
            "course_generated",
            title=course.title,
            modules=len(course.modules),
            knowledge_references=len(references),
        )
        return CourseGenerationResult(course=course)
