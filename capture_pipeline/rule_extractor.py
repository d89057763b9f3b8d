"""
Local rule-based entity extractor.

Works offline on English cue words ("name is", "phone", "needs", "budget"),
spoken digits ("five one two ..."), number words ("two thousand"), shorthand
amounts ("15k", "ten grand") and e-mail addresses spoken as "at"/"dot".
Confidence follows the usual guide: explicit mentions 0.9+, inferred values
0.7-0.9, uncertain readings below 0.7 with alternatives.
"""

from __future__ import annotations

import re
import time
from typing import List, Optional, Sequence, Tuple

from logging_setup import get_logger, Component
from .entities import ExtractedEntities, ExtractedEntity
from .extraction import EntityExtractor, coerce_amount, format_phone_digits, normalize_phone_number

logger = get_logger(Component.EXTRACTION)

DIGIT_WORDS = {
    "zero": "0", "oh": "0", "o": "0", "one": "1", "two": "2", "three": "3",
    "four": "4", "five": "5", "six": "6", "seven": "7", "eight": "8", "nine": "9",
}
UNITS = {
    "zero": 0, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5, "six": 6,
    "seven": 7, "eight": 8, "nine": 9, "ten": 10, "eleven": 11, "twelve": 12,
    "thirteen": 13, "fourteen": 14, "fifteen": 15, "sixteen": 16,
    "seventeen": 17, "eighteen": 18, "nineteen": 19,
}
TENS = {
    "twenty": 20, "thirty": 30, "forty": 40, "fifty": 50,
    "sixty": 60, "seventy": 70, "eighty": 80, "ninety": 90,
}
THOUSANDS = {"thousand", "grand", "k"}

PHONE_CUES = {"phone", "number", "call", "cell", "mobile", "reach", "text"}
BUDGET_CUES = {"budget", "spend", "afford", "price", "pay"}
APPROXIMATE = {"around", "about", "roughly", "approximately", "maybe", "like"}
AMOUNT_FILLER = {"is", "of", "a", "the", "up", "to", "under", "max", "maximum", "just", "s"}

TRADE_KEYWORDS = (
    "drywall", "roof", "roofing", "plumbing", "leak", "kitchen", "bathroom",
    "remodel", "paint", "painting", "hvac", "electrical", "wiring", "fence",
    "deck", "flooring", "floor", "window", "windows", "siding", "gutter",
    "gutters", "concrete", "landscaping", "tile", "cabinet", "cabinets",
)

_NAME_RE = re.compile(
    r"\b(?:my name is|name is|name's|this is|i'm|i am|customer is|client is|named)\s+"
    r"([A-Za-z][A-Za-z'\-]+(?:\s+[A-Za-z][A-Za-z'\-]+){0,2})",
    re.IGNORECASE,
)
_NAME_STOP = {
    "and", "phone", "number", "at", "from", "needs", "need", "with", "email",
    "budget", "calling", "looking", "wants", "is", "the", "a", "my", "here",
}

_EMAIL_RE = re.compile(r"\b[\w.+-]+@[\w-]+(?:\.[\w-]+)+\b")
_SPOKEN_EMAIL_RE = re.compile(
    r"\b([a-z0-9]+(?:\s+(?:dot|underscore)\s+[a-z0-9]+)*)\s+at\s+"
    r"([a-z0-9-]+(?:\s+dot\s+[a-z0-9-]+)+)\b",
    re.IGNORECASE,
)

_PROJECT_RE = re.compile(
    r"\b(?:needs|need|needing|looking for|wants|want|project is|job is|interested in|requesting)\s+"
    r"(?:(?:a|an|some|the|to)\s+)?"
    r"(.+?)(?=[,.;!?]|\s+(?:and\s+)?(?:budget|phone|email|asap|urgent|pretty urgent)\b|$)",
    re.IGNORECASE,
)

_TOKEN_RE = re.compile(r"\$|\d[\d,]*(?:\.\d+)?k?|[a-z]+(?:'[a-z]+)?|-|[,.;!?]", re.IGNORECASE)

URGENCY_RULES: Sequence[Tuple[Tuple[str, ...], str, float, Tuple[str, ...]]] = (
    (("not urgent", "no rush", "no hurry", "whenever", "flexible", "no timeline", "eventually"), "low", 0.85, ()),
    (("pretty urgent", "kind of urgent", "kinda urgent", "somewhat urgent", "fairly urgent"), "high", 0.8, ("medium",)),
    (("asap", "as soon as possible", "urgent", "emergency", "right away", "immediately", "today"), "high", 0.9, ()),
    (("this week", "next week", "soon", "few weeks"), "medium", 0.75, ("high",)),
    (("next month", "next year", "sometime", "someday"), "low", 0.75, ("medium",)),
)


def _tokens(text: str) -> List[str]:
    return _TOKEN_RE.findall(text)


def words_to_number(words: Sequence[str]) -> Optional[float]:
    """ "two thousand" -> 2000, "fifteen hundred" -> 1500, "ten grand" -> 10000. """
    total = 0
    current = 0
    seen = False
    for word in words:
        w = word.lower()
        if w in UNITS:
            current += UNITS[w]
        elif w in TENS:
            current += TENS[w]
        elif w == "hundred":
            current = max(current, 1) * 100
        elif w in THOUSANDS:
            total += max(current, 1) * 1000
            current = 0
        elif w == "and" and seen:
            continue
        else:
            return None
        seen = True
    if not seen:
        return None
    return float(total + current)


def _is_number_word(word: str) -> bool:
    w = word.lower()
    return w in UNITS or w in TENS or w == "hundred" or w in THOUSANDS


class RuleBasedExtractor(EntityExtractor):
    """Deterministic extractor; never calls the network."""

    async def extract(self, transcript: str, language_tag: str) -> ExtractedEntities:
        start_ts = time.time()
        if not language_tag.startswith("en"):
            logger.debug("Rule extractor cue words are English", language=language_tag)

        text = " ".join(transcript.split())
        entities = ExtractedEntities()
        entities.name = self.extract_name(text)

        phone, phone_span = self.extract_phone(text)
        entities.phone = phone
        entities.email = self.extract_email(text)
        entities.project = self.extract_project(text)

        budget_text = text
        if phone_span is not None:
            budget_text = text[: phone_span[0]] + " " + text[phone_span[1]:]
        entities.budget = self.extract_budget(budget_text)
        entities.urgency = self.extract_urgency(text)

        logger.info(
            "Rule extraction completed",
            fields=entities.present_fields(),
            transcript_length=len(transcript),
            latency_ms=int((time.time() - start_ts) * 1000),
        )
        return entities

    def extract_name(self, text: str) -> Optional[ExtractedEntity]:
        words: List[str] = []
        for match in _NAME_RE.finditer(text):
            for word in match.group(1).split():
                if word.lower() in _NAME_STOP:
                    break
                words.append(word)
            if words:
                break
        if not words:
            return None
        spoken = " ".join(words)
        if all(w[0].isupper() for w in words):
            confidence = 0.92 if len(words) > 1 else 0.8
            return ExtractedEntity(value=spoken, confidence=confidence)
        # casing unknown: a lower-case transcript
        titled = " ".join(w[:1].upper() + w[1:] for w in words)
        return ExtractedEntity(
            value=titled,
            confidence=0.75,
            alternatives=[spoken] if spoken != titled else [],
            notes="capitalization inferred",
        )

    def extract_phone(self, text: str) -> Tuple[Optional[ExtractedEntity], Optional[Tuple[int, int]]]:
        best: Optional[Tuple[str, bool, bool, Tuple[int, int]]] = None
        for digits, cued, spoken, span in self._digit_runs(text):
            if len(digits) < 7:
                continue
            if best is None or (cued and not best[1]) or (cued == best[1] and len(digits) > len(best[0])):
                best = (digits, cued, spoken, span)
        if best is None:
            return None, None

        digits, cued, spoken, span = best
        if len(digits) == 10 or (len(digits) == 11 and digits.startswith("1")):
            confidence = 0.95 if cued else 0.85
            notes = None
        elif len(digits) == 7:
            confidence = 0.6
            notes = "area code missing"
        else:
            confidence = 0.5
            notes = "unusual number of digits"
        if spoken:
            confidence -= 0.05

        value = format_phone_digits(digits)
        normalized = normalize_phone_number(digits)
        alternatives: List[str] = []
        if confidence < 0.85 and len(digits) > 7:
            alternatives = [digits]
        return (
            ExtractedEntity(
                value=value,
                confidence=confidence,
                alternatives=alternatives,
                notes=notes,
                normalized=normalized if normalized.startswith("+") else None,
            ),
            span,
        )

    def _digit_runs(self, text: str):
        """Runs of digit groups and digit words: (digits, cued, had_words, span)."""
        matches = list(re.finditer(r"\d+|[a-z]+|[,.;!?]", text, re.IGNORECASE))
        i = 0
        while i < len(matches):
            m = matches[i]
            tok = m.group(0).lower()
            starts = tok.isdigit() or (tok in DIGIT_WORDS and tok not in ("oh", "o"))
            if not starts:
                i += 1
                continue
            prev = [x.group(0).lower() for x in matches[max(0, i - 3):i]]
            cued = any(p in PHONE_CUES for p in prev)
            digits = ""
            had_words = False
            start = m.start()
            end = m.end()
            j = i
            while j < len(matches):
                t = matches[j].group(0).lower()
                if t.isdigit():
                    digits += t
                elif t in DIGIT_WORDS:
                    digits += DIGIT_WORDS[t]
                    had_words = True
                elif t == "," and len(digits) < 10 and j + 1 < len(matches) and matches[j + 1].group(0).isdigit() \
                        and len(matches[j + 1].group(0)) <= 4:
                    j += 1
                    continue
                else:
                    break
                end = matches[j].end()
                j += 1
            # number words like "two thousand" are amounts, not digits
            if j < len(matches) and _is_number_word(matches[j].group(0)) and matches[j].group(0).lower() not in DIGIT_WORDS:
                i = j + 1
                continue
            yield digits, cued, had_words, (start, end)
            i = max(j, i + 1)

    def extract_email(self, text: str) -> Optional[ExtractedEntity]:
        match = _EMAIL_RE.search(text)
        if match:
            return ExtractedEntity(value=match.group(0).lower(), confidence=0.95)
        spoken = _SPOKEN_EMAIL_RE.search(text)
        if not spoken:
            return None
        local = _join_spoken(spoken.group(1))
        domain = _join_spoken(spoken.group(2))
        return ExtractedEntity(
            value=f"{local}@{domain}".lower(),
            confidence=0.75,
            notes="spelled out",
        )

    def extract_project(self, text: str) -> Optional[ExtractedEntity]:
        match = _PROJECT_RE.search(text)
        if match:
            value = match.group(1).strip()
            if len(value) >= 3:
                return ExtractedEntity(value=value, confidence=0.85)

        lowered = text.lower()
        for keyword in TRADE_KEYWORDS:
            idx = re.search(rf"\b{keyword}\b", lowered)
            if not idx:
                continue
            clause = _clause_around(text, idx.start())
            return ExtractedEntity(
                value=clause,
                confidence=0.65,
                alternatives=[keyword] if keyword != clause.lower() else [],
                notes="inferred from trade keyword",
            )
        return None

    def extract_budget(self, text: str) -> Optional[ExtractedEntity]:
        tokens = _tokens(text)
        lowered = [t.lower() for t in tokens]

        for i, tok in enumerate(lowered):
            if tok in BUDGET_CUES:
                found = self._amount_after(tokens, i + 1)
                if found is not None:
                    return _budget_entity(*found, cued=True)

        for i, tok in enumerate(lowered):
            if tok == "$" or (tok[0].isdigit() and i + 1 < len(lowered) and lowered[i + 1] in ("dollars", "bucks")):
                found = self._amount_after(tokens, i + 1 if tok == "$" else i)
                if found is not None:
                    return _budget_entity(*found, cued=False)
        return None

    def _amount_after(self, tokens: List[str], start: int):
        """(low, high, from_words, approximate) for the amount starting near `start`."""
        approximate = False
        i = start
        limit = min(len(tokens), start + 6)
        while i < limit:
            t = tokens[i].lower()
            if t in APPROXIMATE:
                approximate = True
            elif t in AMOUNT_FILLER or t == "$":
                pass
            else:
                break
            i += 1
        first = _read_amount(tokens, i)
        if first is None:
            return None
        low, low_scaled, from_words, i = first

        j = i
        while j < len(tokens) and tokens[j].lower() == "$":
            j += 1
        if j < len(tokens) and tokens[j].lower() in ("-", "to", "and"):
            k = j + 1
            while k < len(tokens) and tokens[k] == "$":
                k += 1
            second = _read_amount(tokens, k)
            if second is not None:
                high, high_scaled, high_words, _ = second
                if high_scaled and not low_scaled and low < 1000:
                    low *= 1000
                if high > low:
                    return low, high, from_words or high_words, approximate
        return low, None, from_words, approximate

    def extract_urgency(self, text: str) -> Optional[ExtractedEntity]:
        lowered = f" {text.lower()} "
        for phrases, level, confidence, alternatives in URGENCY_RULES:
            for phrase in phrases:
                if re.search(rf"\b{re.escape(phrase)}\b", lowered):
                    return ExtractedEntity(
                        value=level,
                        confidence=confidence,
                        alternatives=list(alternatives),
                        notes=f'said "{phrase}"',
                    )
        return None


def _read_amount(tokens: List[str], i: int):
    """(amount, scaled, from_words, next_index) or None."""
    if i >= len(tokens):
        return None
    tok = tokens[i].lower()
    if tok[0].isdigit():
        amount = coerce_amount(tok)
        if amount is None:
            return None
        scaled = tok.endswith("k")
        nxt = i + 1
        if nxt < len(tokens) and tokens[nxt].lower() in THOUSANDS:
            amount *= 1000
            scaled = True
            nxt += 1
        return amount, scaled, False, nxt

    words: List[str] = []
    j = i
    while j < len(tokens) and (_is_number_word(tokens[j]) or (tokens[j].lower() == "and" and words)):
        words.append(tokens[j])
        j += 1
    while words and words[-1].lower() == "and":
        words.pop()
        j -= 1
    if not words:
        return None
    amount = words_to_number(words)
    if amount is None:
        return None
    scaled = any(w.lower() in THOUSANDS for w in words)
    return amount, scaled, True, j


def _budget_entity(low: float, high: Optional[float], from_words: bool, approximate: bool, *, cued: bool) -> ExtractedEntity:
    confidence = 0.9 if cued and not from_words else 0.8
    notes = "approximate" if approximate else None
    if high is not None:
        return ExtractedEntity(
            value=(low + high) / 2,
            confidence=confidence,
            range=(low, high),
            notes=notes,
        )
    return ExtractedEntity(value=low, confidence=confidence, notes=notes)


def _join_spoken(part: str) -> str:
    part = re.sub(r"\s+dot\s+", ".", part, flags=re.IGNORECASE)
    part = re.sub(r"\s+underscore\s+", "_", part, flags=re.IGNORECASE)
    return part.replace(" ", "")


def _clause_around(text: str, index: int) -> str:
    start = max(text.rfind(sep, 0, index) for sep in ",.;!?") + 1
    ends = [e for e in (text.find(sep, index) for sep in ",.;!?") if e != -1]
    end = min(ends) if ends else len(text)
    return text[start:end].strip()
