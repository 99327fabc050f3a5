import os
import asyncio
from typing import Any, Dict, List, Optional
import logging
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_core.prompts import PromptTemplate
from langchain_core.output_parsers import PydanticOutputParser
from pydantic import BaseModel, ConfigDict, Field
import json
import re

from models import DIFFICULTIES, QUIZ_TYPES

logger = logging.getLogger(__name__)

MIN_QUESTIONS = 3
MAX_QUESTIONS = 10
OPTION_LETTERS = ("A", "B", "C", "D")
TRUE_FALSE_ANSWERS = ("true", "false")
GENERATION_FAILED_MESSAGE = "Failed to generate quiz. Please try again."


class QuizGenerationError(Exception):
    """The model produced no usable quiz; nothing should be persisted."""

    def __init__(self, message: str = GENERATION_FAILED_MESSAGE):
        super().__init__(message)


class GeneratedQuestion(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    question: str = Field(description="The quiz question or true/false statement")
    options: Optional[List[str]] = Field(
        default=None, description="Exactly four options (A, B, C, D) for multiple choice; omitted for true/false"
    )
    correct_answer: str = Field(
        alias="correctAnswer",
        description="Letter of the correct option (A-D) for multiple choice, or \"true\"/\"false\"",
    )


class QuizGeneration(BaseModel):
    questions: List[GeneratedQuestion] = Field(description="List of quiz questions")


class LLMService:
    """Service for generating quizzes from note content using Gemini"""

    def __init__(
        self,
        llm: Optional[Any] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_retries: int = 3,
        retry_backoff: float = 1.0,
    ):
        if llm is None:
            self.api_key = api_key or os.getenv("GOOGLE_API_KEY") or os.getenv("GEMINI_API_KEY")
            if not self.api_key:
                raise ValueError("GOOGLE_API_KEY or GEMINI_API_KEY environment variable is required")

            llm = ChatGoogleGenerativeAI(
                model=model or os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
                google_api_key=self.api_key,
                temperature=0.3,
                max_output_tokens=4096,
                top_p=0.8,
                top_k=40,
            )

        self.llm = llm
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.parser = PydanticOutputParser(pydantic_object=QuizGeneration)

        self.quiz_prompt = PromptTemplate(
            template="""Generate a quiz based on the following content. Create exactly {quantity} {type_text} questions with {difficulty} difficulty level.

            Content:
            {content}

            Requirements:
            - Generate exactly {quantity} questions
            - Difficulty: {difficulty}
            - Type: {type_text}
            {type_requirements}

            Return ONLY the JSON object, no additional text or formatting.
            {format_instructions}""",
            input_variables=["content", "quantity", "difficulty", "type_text", "type_requirements"],
            partial_variables={"format_instructions": self.parser.get_format_instructions()},
        )

    async def _invoke_llm(self, content: str, quantity: int, difficulty: str, quiz_type: str) -> str:
        if quiz_type == "multiple-choice":
            type_text = "multiple choice"
            type_requirements = (
                "- Each question should have 4 options (A, B, C, D)\n"
                "- Only one option should be correct; correctAnswer is its letter"
            )
        else:
            type_text = "true/false"
            type_requirements = "- Each question should be a true/false statement; correctAnswer is \"true\" or \"false\""

        prompt_text = self.quiz_prompt.format(
            content=content,
            quantity=quantity,
            difficulty=difficulty,
            type_text=type_text,
            type_requirements=type_requirements,
        )
        response = await self.llm.ainvoke(prompt_text)
        if isinstance(response, str):
            return response
        content = getattr(response, "content", None)
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            pieces = []
            for item in content:
                if isinstance(item, dict) and item.get("type") == "text":
                    pieces.append(item.get("text", ""))
                elif isinstance(item, str):
                    pieces.append(item)
            return "".join(pieces)
        return str(response)

    async def generate_quiz(self, content: str, quantity: int, difficulty: str, quiz_type: str) -> Dict[str, Any]:
        """
        Generate a quiz from note content

        Args:
            content: Note text the questions must be based on
            quantity: Number of questions to generate (3-10)
            difficulty: easy, medium or hard
            quiz_type: multiple-choice or true-false

        Returns:
            ``{"questions": [...]}`` in the stored question format

        Raises:
            ValueError: on unusable arguments
            QuizGenerationError: when no valid quiz could be obtained
        """
        if not content or not content.strip():
            raise ValueError("Please add content to your note before generating a quiz")
        if quantity < MIN_QUESTIONS or quantity > MAX_QUESTIONS:
            raise ValueError(f"Question count must be between {MIN_QUESTIONS} and {MAX_QUESTIONS}")
        if difficulty not in DIFFICULTIES:
            raise ValueError(f"Invalid difficulty: {difficulty}")
        if quiz_type not in QUIZ_TYPES:
            raise ValueError(f"Invalid quiz type: {quiz_type}")

        logger.info(f"Generating {quantity} {quiz_type} questions ({difficulty}) from {len(content)} characters")

        for attempt in range(self.max_retries):
            try:
                response_text = await self._invoke_llm(content, quantity, difficulty, quiz_type)
                quiz_data = self._parse_response(response_text)
                questions = self._validate_quiz_data(quiz_data, quiz_type)
            except Exception as e:
                logger.warning(f"Quiz generation failed on attempt {attempt + 1}: {e}")
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(self.retry_backoff * 2 ** attempt)
                continue

            if len(questions) != quantity:
                logger.warning(f"Expected {quantity} questions but got {len(questions)}")
            logger.info(f"Successfully generated quiz with {len(questions)} questions")
            return {"questions": questions}

        logger.error(f"Giving up on quiz generation after {self.max_retries} attempts")
        raise QuizGenerationError()

    def _parse_response(self, response_text: str) -> Dict[str, Any]:
        text = self._strip_code_fences(response_text)
        try:
            parsed = self.parser.parse(text)
            return parsed.model_dump(by_alias=True, exclude_none=True)
        except Exception as parse_error:
            logger.warning(f"Parser failed, trying manual JSON extraction: {parse_error}")
            return self._extract_json_manually(text)

    @staticmethod
    def _strip_code_fences(text: str) -> str:
        text = text.strip()
        if text.startswith("```"):
            text = re.sub(r"```(?:json)?\n?", "", text)
        return text.strip()

    def _extract_json_manually(self, response: str) -> Dict[str, Any]:
        """Fallback method to extract JSON from LLM response"""
        json_match = re.search(r"\{.*\}", response, re.DOTALL)
        if not json_match:
            raise ValueError("No JSON object found in response")
        json_str = json_match.group()
        try:
            return json.loads(json_str)
        except json.JSONDecodeError:
            logger.warning("JSON parsing failed, attempting to fix common issues")
            return self._fix_and_parse_json(json_str)

    def _fix_and_parse_json(self, json_str: str) -> Dict[str, Any]:
        """Attempt to fix common JSON parsing issues"""
        json_str = re.sub(r",\s*}", "}", json_str)
        json_str = re.sub(r",\s*]", "]", json_str)
        return json.loads(json_str)

    def _validate_quiz_data(self, quiz_data: Dict[str, Any], quiz_type: str) -> List[Dict[str, Any]]:
        """Validate the generated quiz data and return normalized questions"""
        if not isinstance(quiz_data, dict):
            raise ValueError("Quiz data must be a dictionary")

        questions = quiz_data.get("questions")
        if not isinstance(questions, list) or not questions:
            raise ValueError("Invalid quiz data structure")

        normalized = []
        for i, question in enumerate(questions):
            if not isinstance(question, dict):
                raise ValueError(f"Question {i} must be a dictionary")

            text = question.get("question")
            if not isinstance(text, str) or not text.strip():
                raise ValueError(f"Question {i} has no question text")

            answer = str(question.get("correctAnswer", "")).strip()
            if quiz_type == "multiple-choice":
                options = question.get("options")
                if not isinstance(options, list) or len(options) != 4:
                    raise ValueError(f"Question {i} must have exactly 4 options")
                answer = answer.upper()
                if answer not in OPTION_LETTERS:
                    raise ValueError(f"Question {i} correctAnswer must be one of A-D")
                normalized.append({
                    "question": text.strip(),
                    "options": [str(option) for option in options],
                    "correctAnswer": answer,
                })
            else:
                answer = answer.lower()
                if answer not in TRUE_FALSE_ANSWERS:
                    raise ValueError(f"Question {i} correctAnswer must be true or false")
                normalized.append({"question": text.strip(), "correctAnswer": answer})

        logger.info(f"Quiz validation passed: {len(normalized)} questions validated")
        return normalized


llm_service = None


def get_llm_service() -> LLMService:
    """Get or create the global LLM service instance"""
    global llm_service
    if llm_service is None:
        llm_service = LLMService()
    return llm_service
