import json
import logging
from typing import Mapping

from tellsafe.errors import DecryptionError, MalformedPayloadError, SurveyClosedError
from tellsafe.models import FeedbackResponse, Survey, Organization
from tellsafe.observability import log_event
from tellsafe.services import crypto
from tellsafe.utils.validators import clean_text

MAX_ANSWER_CHARS = 5000
MAX_CATEGORIES = 5

logger = logging.getLogger(__name__)


def encrypt_answers(answers: Mapping[str, str], org_key: bytes) -> str:
    return crypto.encrypt(json.dumps(dict(answers), ensure_ascii=False, sort_keys=True), org_key)


def decrypt_answers(ciphertext: str, org_key: bytes) -> dict:
    plain = crypto.decrypt(ciphertext, org_key)
    try:
        answers = json.loads(plain)
    except ValueError as exc:
        raise DecryptionError("decrypted payload is not a JSON object") from exc
    if not isinstance(answers, dict):
        raise DecryptionError("decrypted payload is not a JSON object")
    return answers


def answers_text(answers: Mapping[str, str]) -> str:
    """Free-text answers joined in key order; what sentiment and excerpts read."""
    return "\n".join(str(answers[k]) for k in sorted(answers) if isinstance(answers[k], str) and answers[k].strip())


def clean_categories(raw, allowed) -> list:
    """Respondent-picked labels; each must be one of the org's categories."""
    if raw is None:
        return []
    if not isinstance(raw, list) or not all(isinstance(c, str) for c in raw):
        raise MalformedPayloadError("categories must be a list of strings")
    allowed = set(allowed or [])
    picked = []
    for name in raw:
        name = name.strip()
        if name not in allowed:
            raise MalformedPayloadError(f"unknown category: {name}")
        if name not in picked:
            picked.append(name)
    if len(picked) > MAX_CATEGORIES:
        raise MalformedPayloadError(f"at most {MAX_CATEGORIES} categories")
    return picked


def submit_response(session, *, org: Organization, survey: Survey, answers: Mapping, key_provider, tagger,
                    categories=None, alerter=None) -> FeedbackResponse:
    """
    Validate answers against the survey, encrypt them with the org key and
    store the response. Sentiment is tagged on submit; the digest builder
    annotates anything that was stored without it. The org's chat channel is
    alerted after the row is committed.
    """
    if not survey.accepts_responses:
        raise SurveyClosedError(f"survey {survey.id} is {survey.status}")
    if not isinstance(answers, Mapping) or not answers:
        raise MalformedPayloadError("answers must be a non-empty object")

    allowed = set(survey.question_keys())
    cleaned = {}
    for key, value in answers.items():
        if allowed and key not in allowed:
            raise MalformedPayloadError(f"unknown question key: {key}")
        text = clean_text(value if isinstance(value, str) else None, MAX_ANSWER_CHARS)
        if text:
            cleaned[key] = text
    if not cleaned:
        raise MalformedPayloadError("answers are empty")
    picked = clean_categories(categories, org.feedback_categories)

    key = key_provider.key_for(org)
    text = answers_text(cleaned)
    score = tagger.score(text)
    response = FeedbackResponse(
        org_id=org.id,
        survey_id=survey.id,
        answers_ciphertext=encrypt_answers(cleaned, key),
        categories=picked,
    )
    response.annotate(score.label, score.score)
    session.add(response)
    session.commit()
    log_event(logger, "response_submitted", org_id=org.id, survey_id=survey.id,
              response_id=response.id, sentiment=response.sentiment, categories=len(picked))
    if alerter is not None:
        alerter.notify(org, response, text)
    return response
