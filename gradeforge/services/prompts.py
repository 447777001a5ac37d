"""
Prompt templates for the analysis service.

Each builder returns the user-turn text for one analysis operation. Every
prompt asks for a single JSON object so responses can be validated with the
models in gradeforge.models.analysis.
"""

import json

from gradeforge.config import GRADE_NAMES
from gradeforge.models.card import Card, ChallengeDirection

SYSTEM_PROMPT = (
    "You are a professional sports card grader working to the NGA standard. "
    "You examine card photographs carefully and report only what the images show. "
    "Always answer with a single JSON object and nothing else unless told otherwise."
)

NGA_GRADING_GUIDE = """
<grading_guide>
NGA CARD GRADING SYSTEM (whole numbers only)

Categories, each graded 1-10:
- Centering (25%): image centering, front and back
- Corners (25%): sharpness and shape of all four corners
- Edges (20%): cleanliness and uniformity of the borders
- Surface (20%): gloss, print marks, indentations, scratches
- Print quality (10%): focus, registration, print defects

CENTERING
- 10: borders even; up to 55/45 front, 60/40 back
- 9: up to 60/40 front, 65/35 back
- 8: up to 70/30 front, 75/25 back
- 7: up to 80/20 front, 85/15 back
- 6: up to 85/15 front, 90/10 back, or tilted
- 5-1: worse than 90/10, borders touching or cut off

CORNERS
- 10: all four razor sharp
- 9: one corner slightly soft
- 8: two corners lightly touched, no fraying
- 7: minor visible wear on several corners
- 6: noticeable rounding or fraying
- 5-4: rounded or obviously worn
- 3-1: heavy wear, folded or bent

EDGES
- 10: no nicks or chipping
- 9: one tiny nick or faint chipping
- 8: light wear on one or two edges
- 7: minor edge whitening
- 6: multiple nicks, slight roughness
- 5-4: moderate chipping visible from above
- 3-1: severe wear, peeling or layering

SURFACE
- 10: flawless gloss, no print lines or scratches
- 9: a tiny print line or faint mark
- 8: minor wear, one light scratch
- 7: small print line, small dent, faint clouding
- 6: several small scratches or a light impression
- 5-4: scuffing, minor indents, dull gloss
- 3-1: creases, deep scratches, severe staining

PRINT QUALITY
- 10: sharp focus, perfect registration
- 9: slight print dot or faint colour shift
- 8: slight misregistration
- 7: noticeable misprint or soft focus
- 6-4: poor colour alignment or faded print
- 3-1: major print error, missing colour, smearing

FINAL GRADE
1. Average the five subgrades and round DOWN to a whole number.
2. If one category is 2 or more grades below the others, subtract 1.
3. If surface or corners is below 6, cap the grade at 6.
4. If the card has a crease, cap the grade at 5.
</grading_guide>
"""

_GRADE_TABLE = ", ".join(f"{grade}: {name}" for grade, name in GRADE_NAMES.items())

_DETAILS_SCHEMA = """{
    "centering": {"grade": number, "notes": string},
    "corners": {"grade": number, "notes": string},
    "edges": {"grade": number, "notes": string},
    "surface": {"grade": number, "notes": string},
    "printQuality": {"grade": number, "notes": string}
  }"""


def _card_line(card: Card) -> str:
    parts = [card.year, card.company, card.set_name, card.name]
    line = " ".join(p for p in parts if p) or "Unidentified card"
    if card.card_number:
        line = f"{line} #{card.card_number}"
    return line


def _details_json(card: Card) -> str:
    if card.details is None:
        return "{}"
    return json.dumps(card.details.model_dump(mode="json", by_alias=True), indent=2)


def identify_prompt() -> str:
    return """Identify the sports card in the two images (front, then back).

Determine the player name, team, year, set, manufacturer (company), card number
and edition (for example "Base" or "Chrome"). Use an empty string for anything
you cannot read.

Return one JSON object:
{
  "name": string,
  "team": string,
  "set": string,
  "edition": string,
  "cardNumber": string,
  "company": string,
  "year": string
}"""


def grade_prompt() -> str:
    return f"""Perform a strict NGA grading of the card in the two images (front, then back).
{NGA_GRADING_GUIDE}
1. Assign a whole-number subgrade (1-10) to each of the five categories.
2. Give brief technical notes for each subgrade describing the flaws seen.
3. Calculate overallGrade exactly as the FINAL GRADE section describes.
4. Set gradeName from this table: {_GRADE_TABLE}.

Do not write a summary. Return one JSON object:
{{
  "details": {_DETAILS_SCHEMA},
  "overallGrade": number,
  "gradeName": string
}}"""


def summary_prompt(card: Card) -> str:
    return f"""Write a professional NGA grading summary for this card.

Card: {_card_line(card)}
Grade: {card.overall_grade} ({card.grade_name})
Subgrades: {_details_json(card)}

In two or three sentences, justify the overall grade from the subgrades and the
visible condition in the images. Mention the key flaws or highlights.

Return one JSON object:
{{"summary": string}}"""


def challenge_prompt(card: Card, direction: ChallengeDirection) -> str:
    if direction is ChallengeDirection.HIGHER:
        focus = "look for evidence that the initial flaws were overestimated"
    else:
        focus = "look for subtle flaws (micro-fractures, print dots) the first pass missed"

    return f"""You are a head NGA grader reviewing a colleague's work. The owner has
challenged the grade and believes it should be {direction.value}.
{NGA_GRADING_GUIDE}
Card: {_card_line(card)}
Initial grade: {card.overall_grade} ({card.grade_name})
Initial notes: {_details_json(card)}

Re-examine the images with the challenge in mind and {focus}. Then either
revise the grade or defend it, using only the guide. The final grade must be a
whole number calculated as the FINAL GRADE section describes, and gradeName must
come from this table: {_GRADE_TABLE}.

The summary is your reply to the owner. It must begin with either
"Upon re-evaluation, I am maintaining the grade because..." or
"Upon re-evaluation, I have adjusted the grade because..." and cite specific
evidence from the images.

Return one JSON object:
{{
  "overallGrade": number,
  "gradeName": string,
  "details": {_DETAILS_SCHEMA},
  "summary": string
}}"""


def justify_prompt(card: Card, grade: int, grade_name: str) -> str:
    return f"""You are a veteran NGA grader. The final grade for this card has been set
to {grade} ({grade_name}). Write the report that justifies exactly this grade.
{NGA_GRADING_GUIDE}
Card: {_card_line(card)}
Team: {card.team or "unknown"}

Find the evidence in the images that supports a {grade}. For grades 9-10 focus
on near-perfect qualities and minute flaws; for 6-8 the combination of minor
flaws; for 1-5 the significant defects. Subgrades must be whole numbers that
lead to {grade} under the FINAL GRADE rules, with notes describing what you see.

Return one JSON object:
{{
  "details": {_DETAILS_SCHEMA},
  "summary": string
}}"""


def valuation_prompt(card: Card) -> str:
    grade_term = f"Grade {card.overall_grade}"
    if card.grade_name:
        grade_term = f"{grade_term} {card.grade_name}"
    parts = [card.year, card.company, card.set_name, card.name]
    query = " ".join(p for p in parts if p)
    if card.card_number:
        query = f"{query} #{card.card_number}"
    if card.edition:
        query = f"{query} {card.edition}"
    query = f"{query} {grade_term}"

    return f"""Estimate the current market value of a sports card from recent sales.

Search query: "{query}"
Grade: {card.overall_grade} (compare with PSA {card.overall_grade}, BGS \
{card.overall_grade}, or raw copies for low grades)

1. Search the web for recently SOLD listings (eBay sold, 130point, Goldin and
   similar) of this exact card in a similar grade.
2. Ignore active listings; asking prices are not sales.
3. If exact grade matches are rare, use adjacent grades and say so in notes.
4. Compute the minimum, maximum and average sold price.

Finish your answer with one JSON object in a ```json fenced block:
{{
  "averagePrice": number,
  "minPrice": number,
  "maxPrice": number,
  "currency": "USD",
  "lastSoldDate": "YYYY-MM-DD or Unknown",
  "notes": "how the estimate was made"
}}"""
