"""
Cultural and content compliance checks for follow-up messages.

This module contains functionality for:
- Blocking aggressive or culturally inappropriate wording
- Tone checks (demanding or casual language in formal steps)
- Unresolved placeholder detection in rendered content
- Arabic/English pairing checks for bilingual steps
- Advisory tone escalation review across a whole sequence

The gate is pure: it reads the step and the rendered text and never touches
the database.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

from followup_engine.models.sequence import StepLanguage, StepTone

logger = logging.getLogger(__name__)

# Wording that must never reach a customer
BLOCKED_PHRASES = [
    'legal action', 'debt collection', 'final warning', 'last chance',
    'failure to pay', 'penalty', 'court', 'blacklist', 'outstanding debt',
]

# Wording that reads as pushy; lowers the score without blocking
DISCOURAGED_PHRASES = [
    'immediately', 'urgent', 'right now', 'deadline', 'interest charges',
    'late fees', 'your account is overdue', 'to whom it may concern',
    'dear sir/madam', 'account holder',
]

DEMANDING_PHRASES = ['must pay', 'you must', 'you need to', 'have to pay', 'demand', 'we require']

CASUAL_PHRASES = ['hey', 'hi there', 'asap', 'gonna', 'wanna', 'cheers', 'no worries', '!!']

PREFERRED_PHRASES = [
    'kindly', 'please', 'we would appreciate', 'at your convenience', 'when possible',
    'we respectfully request', 'may we request', 'valued', 'esteemed', 'partnership',
    'outstanding invoice', 'pending payment', 'invoice settlement', 'payment arrangement',
]

GREETINGS = [
    'dear', 'greetings', 'hello', 'good morning', 'good afternoon', 'peace be upon you',
    'as-salamu alaykum', 'valued', 'esteemed', 'عزيزي', 'السلام عليكم', 'السادة',
]

CLOSINGS = [
    'thank you', 'regards', 'sincerely', 'best wishes', 'jazakallahu khair', 'barakallahu',
    'may allah bless', 'شكرا', 'شكراً', 'مع التحية', 'وتفضلوا',
]

PLACEHOLDER_PATTERN = re.compile(r'\{\{\s*[\w.]+\s*\}\}')
ARABIC_SCRIPT_PATTERN = re.compile(r'[\u0600-\u06FF]')

FORMAL_TONES = (StepTone.FORMAL, StepTone.VERY_FORMAL)
FIRM_TONES = (StepTone.BUSINESS, StepTone.FORMAL, StepTone.VERY_FORMAL)

DEFAULT_MIN_SCORE = 60


@dataclass
class RenderedContent:
    subject: str = ''
    body: str = ''
    subject_ar: Optional[str] = None
    body_ar: Optional[str] = None


@dataclass
class ComplianceResult:
    allowed: bool
    score: int
    issues: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            'allowed': self.allowed,
            'score': self.score,
            'issues': list(self.issues),
            'suggestions': list(self.suggestions)
        }


def _contains_phrase(text: str, phrase: str) -> bool:
    if phrase[0].isalnum() and phrase[-1].isalnum():
        return re.search(r'\b' + re.escape(phrase) + r'\b', text) is not None
    return phrase in text


def has_arabic_script(text: Optional[str]) -> bool:
    return bool(text) and ARABIC_SCRIPT_PATTERN.search(text) is not None


class ComplianceGate:
    """Stateless validator applied to step templates and rendered messages."""

    def __init__(self, require_bilingual: bool = False, min_score: int = DEFAULT_MIN_SCORE):
        self.require_bilingual = require_bilingual
        self.min_score = min_score

    def validate(self, step, rendered: RenderedContent) -> ComplianceResult:
        """Validate content about to be dispatched."""
        return self._evaluate(step, rendered, rendered_check=True)

    def validate_template(self, step) -> ComplianceResult:
        """Validate raw step templates at sequence creation time; placeholders are allowed."""
        template = RenderedContent(
            subject=step.subject or '',
            body=step.content or '',
            subject_ar=step.subject_ar,
            body_ar=step.content_ar,
        )
        return self._evaluate(step, template, rendered_check=False)

    def _evaluate(self, step, content: RenderedContent, rendered_check: bool) -> ComplianceResult:
        issues = []
        suggestions = []
        score = 100

        language = step.language or StepLanguage.ENGLISH
        tone = step.tone or StepTone.BUSINESS
        needs_english = language in (StepLanguage.ENGLISH, StepLanguage.BOTH)
        needs_arabic = language in (StepLanguage.ARABIC, StepLanguage.BOTH) or (
            self.require_bilingual and language == StepLanguage.ENGLISH
        )

        if needs_english:
            if not (content.subject or '').strip():
                issues.append('Subject is empty')
            if not (content.body or '').strip():
                issues.append('Message body is empty')

        if needs_arabic:
            if not (content.subject_ar or '').strip() or not (content.body_ar or '').strip():
                issues.append('Missing Arabic subject or content for bilingual step')
            elif not has_arabic_script(content.body_ar):
                issues.append('Arabic content does not contain Arabic script')

        texts = []
        if needs_english:
            texts.append(f"{content.subject or ''} {content.body or ''}")
        if needs_arabic:
            texts.append(f"{content.subject_ar or ''} {content.body_ar or ''}")
        full_text = ' '.join(texts).lower()

        for phrase in BLOCKED_PHRASES:
            if _contains_phrase(full_text, phrase):
                issues.append(f'Inappropriate phrase detected: "{phrase}"')
                score -= 15

        for phrase in DISCOURAGED_PHRASES:
            if _contains_phrase(full_text, phrase):
                suggestions.append(f'Consider softening the phrase "{phrase}"')
                score -= 5

        demanding = [phrase for phrase in DEMANDING_PHRASES if _contains_phrase(full_text, phrase)]
        if demanding:
            if tone in FIRM_TONES:
                issues.append('Language too demanding - use softer requests')
            else:
                suggestions.append('Use softer requests instead of demands')
            score -= 10

        if tone in FORMAL_TONES:
            casual = [phrase for phrase in CASUAL_PHRASES if _contains_phrase(full_text, phrase)]
            if casual:
                issues.append(f'Casual wording not suitable for {tone.lower()} tone: {", ".join(casual)}')
                score -= 10

        if rendered_check:
            if PLACEHOLDER_PATTERN.search(' '.join(texts)):
                unresolved = sorted(set(PLACEHOLDER_PATTERN.findall(' '.join(texts))))
                issues.append(f'Unresolved placeholders: {", ".join(unresolved)}')
        elif needs_english and not PLACEHOLDER_PATTERN.search(content.body or ''):
            suggestions.append('Consider adding personalization variables like {{customerName}}')
            score -= 5

        primary_body = (content.body if needs_english else content.body_ar) or ''
        if primary_body and not self._has_greeting(primary_body):
            suggestions.append('Add respectful greeting (e.g., "Dear Valued Customer")')
            score -= 5
        if primary_body and not self._has_closing(primary_body):
            suggestions.append('Add respectful closing (e.g., "Thank you for your attention")')
            score -= 5
        if needs_english and not any(_contains_phrase(full_text, phrase) for phrase in PREFERRED_PHRASES):
            suggestions.append('Consider using more respectful language (e.g., "kindly", "at your convenience")')
            score -= 10

        score = max(0, score)
        if score < self.min_score:
            issues.append(f'Compliance score {score} below minimum {self.min_score}')

        allowed = not issues
        if not allowed:
            logger.info(f"Compliance gate rejected step {getattr(step, 'step_number', '?')}: {issues}")
        return ComplianceResult(allowed=allowed, score=score, issues=issues, suggestions=suggestions)

    @staticmethod
    def _has_greeting(body: str) -> bool:
        first_line = body.strip().lower().split('\n')[0]
        return any(greeting in first_line for greeting in GREETINGS)

    @staticmethod
    def _has_closing(body: str) -> bool:
        last_lines = ' '.join(body.strip().lower().split('\n')[-3:])
        return any(closing in last_lines for closing in CLOSINGS)

    def validate_tone_escalation(self, steps) -> List[str]:
        """Advisory warnings on pacing and tone progression across a sequence."""
        warnings = []
        previous_rank = None
        for index, step in enumerate(steps):
            delay_days = step.delay_days or 0
            if index == 0 and delay_days < 7:
                warnings.append(f'Step {step.step_number}: first reminder sooner than 7 days may feel rushed')
            elif index > 0 and delay_days < 5:
                warnings.append(f'Step {step.step_number}: follow-ups less than 5 days apart may appear aggressive')

            tone = step.tone or StepTone.BUSINESS
            rank = StepTone.ORDER.index(tone) if tone in StepTone.ORDER else None
            if rank is not None and previous_rank is not None and rank < previous_rank:
                warnings.append(f'Step {step.step_number}: tone becomes less formal than the previous step')
            if rank is not None:
                previous_rank = rank
        return warnings
