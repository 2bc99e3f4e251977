"""AI assistant: the donor FAQ chatbot and the intelligent donor matcher.

Both are thin wrappers over one structured-output model call. The input is
validated, the prompt rendered, and the model's JSON checked against the
expected schema. Any failure on the way becomes an ``AssistantError``. No
ranking, distance or compatibility work happens here.
"""

import logging
import threading
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

CHAT_ROLES = ('user', 'bot')


class AssistantError(Exception):
    pass


# ------------------------- #
# Schemas
# ------------------------- #
class FaqQuery(BaseModel):
    query: str = Field(min_length=1, description='The user query about blood donation.')


class FaqAnswer(BaseModel):
    answer: str = Field(description='The answer to the user query.')


class MatchCriteria(BaseModel):
    patientBloodType: str = Field(min_length=1, description='The blood type of the patient needing a donor.')
    patientCity: str = Field(description='The city where the patient is located.')
    patientNeeds: str = Field(default='', description='Specific needs or requirements for the donor.')
    searchRadiusKm: float = Field(default=50, ge=0, description='The radius in kilometers to search for potential donors.')


class SuggestedDonor(BaseModel):
    donorName: str = Field(description='The name of the potential donor.')
    donorBloodType: str = Field(description='The blood type of the potential donor.')
    distanceKm: float = Field(description='The distance in kilometers from the patient to the donor.')
    contactInformation: str = Field(description='How to contact the potential donor.')
    suitabilityScore: float = Field(ge=0, le=100, description='How well the donor matches the patient needs, 0-100.')
    additionalNotes: Optional[str] = Field(default=None, description='Any additional notes about the donor.')


class MatchResult(BaseModel):
    suggestedDonors: List[SuggestedDonor] = Field(description='Potential donors who meet the criteria.')
    summary: str = Field(description='A summary of the search results and any important considerations.')


class ChatMessage(BaseModel):
    role: Literal['user', 'bot']
    text: str


# ------------------------- #
# Prompts
# ------------------------- #
FAQ_PROMPT = """You are a chatbot designed to answer questions about blood donation.

Answer the following question:

{query}"""

MATCH_PROMPT = """You are an AI assistant designed to find suitable blood donors for patients in urgent need. Based on the patient's blood type ({patientBloodType}), location ({patientCity}), specific needs ({patientNeeds}), and the desired search radius ({searchRadiusKm} km), identify potential donors and provide their relevant information.

Consider factors such as distance, blood type compatibility, and any additional notes about the donors' health conditions or availability. Provide a suitability score from 0 to 100 for each donor based on how well they match the patient's needs.

Format your output as a JSON object with a 'suggestedDonors' array, where each object in the array represents a potential donor with fields like 'donorName', 'donorBloodType', 'distanceKm', 'contactInformation', 'suitabilityScore', and 'additionalNotes'. Also, include a 'summary' field that summarizes the search results and any important considerations.

Ensure that the 'suggestedDonors' array is sorted by suitability score in descending order (highest score first).
"""


class AssistantService:
    """Runs the two prompts against a google-genai client."""

    def __init__(self, client=None, model='gemini-2.0-flash', api_key=None):
        self._client = client
        self.model = model
        self.api_key = api_key

    @classmethod
    def from_config(cls, config):
        return cls(model=config.get('AI_MODEL'), api_key=config.get('GEMINI_API_KEY'))

    @property
    def client(self):
        if self._client is None:
            from google import genai
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    def _generate(self, prompt, schema):
        from google.genai import types
        try:
            response = self.client.models.generate_content(
                model=self.model,
                contents=prompt,
                config=types.GenerateContentConfig(
                    response_mime_type='application/json',
                    response_schema=schema,
                ),
            )
        except Exception as e:
            logger.error(f"Model call failed: {e}")
            raise AssistantError('model call failed') from e

        parsed = getattr(response, 'parsed', None)
        try:
            if isinstance(parsed, schema):
                return schema.model_validate(parsed.model_dump())
            if parsed is not None:
                return schema.model_validate(parsed)
            return schema.model_validate_json(response.text or '')
        except ValidationError as e:
            logger.error(f"Model output does not match {schema.__name__}: {e}")
            raise AssistantError('model output rejected') from e

    def answer_faq(self, query):
        try:
            request = FaqQuery(query=query)
        except ValidationError as e:
            raise AssistantError('empty query') from e
        return self._generate(FAQ_PROMPT.format(query=request.query), FaqAnswer).answer

    def find_matches(self, criteria):
        if not isinstance(criteria, MatchCriteria):
            try:
                criteria = MatchCriteria.model_validate(criteria)
            except ValidationError as e:
                raise AssistantError('invalid criteria') from e
        return self._generate(MATCH_PROMPT.format(**criteria.model_dump()), MatchResult)


def build_criteria(data, default_radius_km=50):
    if isinstance(data, dict):
        data = dict(data)
        if data.get('searchRadiusKm') in (None, ''):
            data['searchRadiusKm'] = default_radius_km
    return MatchCriteria.model_validate(data)


# ------------------------- #
# Per-view state
# ------------------------- #
class FaqChat:
    """Message log of one chat view. Each question is a stateless model call."""

    def __init__(self, service, error_text):
        self.service = service
        self.error_text = error_text
        self.messages = []
        self._pending = 0
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def busy(self):
        return self._pending > 0

    def send(self, query):
        """Append the question and the reply; blank input is ignored. Returns the bot message or None."""
        if not isinstance(query, str) or not query.strip():
            return None
        with self._lock:
            self.messages.append(ChatMessage(role='user', text=query))
            generation = self._generation
            self._pending += 1

        try:
            reply = ChatMessage(role='bot', text=self.service.answer_faq(query))
        except AssistantError:
            reply = ChatMessage(role='bot', text=self.error_text)

        with self._lock:
            if generation != self._generation:
                logger.debug("Dropping chat reply for a reset view")
                return None
            self.messages.append(reply)
            self._pending -= 1
            return reply

    def reset(self):
        with self._lock:
            self._generation += 1
            self.messages = []
            self._pending = 0

    def to_dict(self):
        with self._lock:
            return {'messages': [m.model_dump() for m in self.messages], 'busy': self.busy}


class MatcherPanel:
    """Result panel of the matcher. Only the most recent run may write a result."""

    def __init__(self, service, default_radius_km=50):
        self.service = service
        self.default_radius_km = default_radius_km
        self.result = None
        self.error = None
        self.busy = False
        self._generation = 0
        self._lock = threading.Lock()

    def run(self, criteria):
        """Run one match. Raises pydantic's ValidationError for bad input, AssistantError on failure."""
        if not isinstance(criteria, MatchCriteria):
            criteria = build_criteria(criteria, self.default_radius_km)

        with self._lock:
            self._generation += 1
            generation = self._generation
            self.result = None
            self.error = None
            self.busy = True

        try:
            result, error = self.service.find_matches(criteria), None
        except AssistantError as e:
            result, error = None, e

        with self._lock:
            if generation != self._generation:
                logger.debug("Dropping stale matcher result")
                return None
            self.busy = False
            self.result = result
            self.error = error
        if error is not None:
            raise error
        return result

    def close(self):
        with self._lock:
            self._generation += 1
            self.busy = False

    def to_dict(self):
        with self._lock:
            return {
                'busy': self.busy,
                'result': self.result.model_dump() if self.result else None,
                'failed': self.error is not None,
            }
