"""Persona-based review of integrated changes."""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from agent_dispatch.db.models import Assignment, PersonaReview, ReviewResult
from agent_dispatch.errors import ProcessError, ValidationError

logger = logging.getLogger(__name__)

MAX_DIFF_CHARS = 10000

DECISION_RE = re.compile(r"DECISION:\s*(PASS|FAIL)", re.IGNORECASE)
SCORE_RE = re.compile(r"SCORE:\s*(\d+)")
FEEDBACK_RE = re.compile(r"FEEDBACK:\s*([\s\S]*)")


@dataclass
class Persona:
    name: str
    role: str
    focus_areas: list[str]
    passing_criteria: list[str]


PERSONAS = [
    Persona(
        name="architect",
        role="Software Architect",
        focus_areas=["Requirements coverage", "System design",
                     "Implementation completeness", "Technical correctness"],
        passing_criteria=[
            "All requirements from the issue are implemented",
            "The implementation matches the specified design",
            "Code is complete and functional",
            "No major technical issues or gaps",
        ],
    ),
    Persona(
        name="product-manager",
        role="Product Manager",
        focus_areas=["Requirements coverage", "User value delivery",
                     "Acceptance criteria", "Feature completeness"],
        passing_criteria=[
            "All requirements from the original issue are addressed",
            "The solution solves the stated problem",
            "User-facing changes are clear and valuable",
            "No scope creep or unrelated changes",
        ],
    ),
    Persona(
        name="senior-engineer",
        role="Senior Software Engineer",
        focus_areas=["Code quality", "Architecture", "Maintainability", "Best practices"],
        passing_criteria=[
            "Code follows project conventions and style",
            "No obvious bugs or logic errors",
            "Proper error handling",
            "Code is readable and well-structured",
        ],
    ),
    Persona(
        name="qa-engineer",
        role="QA Engineer",
        focus_areas=["Test coverage", "Edge cases", "Error scenarios", "Regression risk"],
        passing_criteria=[
            "Critical paths have test coverage",
            "Edge cases are handled",
            "Error scenarios are tested",
            "No obvious gaps in testing",
        ],
    ),
    Persona(
        name="security-engineer",
        role="Security Engineer",
        focus_areas=["Security vulnerabilities", "Data validation",
                     "Authentication/Authorization", "Sensitive data handling"],
        passing_criteria=[
            "No obvious security vulnerabilities",
            "User input is validated",
            "Secrets are not hardcoded",
            "Proper access control where applicable",
        ],
    ),
]


def select_personas(names: list[str] | None) -> list[Persona]:
    """Architect by default, every persona for 'all', else the named ones."""
    if not names:
        return [p for p in PERSONAS if p.name == "architect"]
    if "all" in names:
        return list(PERSONAS)
    known = {p.name for p in PERSONAS}
    unknown = [n for n in names if n not in known]
    if unknown:
        raise ValidationError(f"Unknown review persona(s): {', '.join(unknown)}")
    return [p for p in PERSONAS if p.name in names]


def build_review_prompt(persona: Persona, assignment: Assignment, diff: str) -> str:
    criteria = "\n".join(f"{i}. {c}" for i, c in enumerate(persona.passing_criteria, 1))
    truncated = diff[:MAX_DIFF_CHARS]
    if len(diff) > MAX_DIFF_CHARS:
        truncated += "\n... (truncated)"

    return f"""<persona>
You are a **{persona.role}** reviewing a code change for merge approval.

Your role focuses on: {', '.join(persona.focus_areas)}

Your passing criteria:
{criteria}
</persona>

**Context:**
- Issue #{assignment.issue_number}: {assignment.issue_title}
- Branch: {assignment.branch_name or 'unknown'}

**Original issue description:**
{assignment.issue_body or 'No description provided'}

**Changes (git diff):**
```diff
{truncated}
```

**Instructions:**
1. Review the changes from your perspective as a {persona.role}
2. Evaluate them against your criteria
3. Decide whether the change should be approved
4. Give specific, actionable feedback

**Response format:**
Respond in exactly this format:

DECISION: [PASS or FAIL]
SCORE: [1-10]
FEEDBACK: [Your feedback. If FAIL, state clearly what must be fixed.]"""


def parse_review_response(response: str) -> tuple[bool, str, int | None]:
    """Return (passed, feedback, score) from a persona response."""
    decision = DECISION_RE.search(response)
    passed = bool(decision) and decision.group(1).upper() == "PASS"

    score_match = SCORE_RE.search(response)
    score = int(score_match.group(1)) if score_match else None

    feedback_match = FEEDBACK_RE.search(response)
    feedback = feedback_match.group(1).strip() if feedback_match else response

    if not decision:
        feedback = f"[Invalid response format - using raw response]\n\n{response}"
    if not feedback.strip():
        feedback = "No feedback provided"
    return passed, feedback, score


class PersonaReviewGate:
    def __init__(self, agent, repo_path: str | Path | None = None,
                 personas: list[str] | None = None, require_all: bool = True):
        self.agent = agent
        self.repo_path = repo_path
        self.personas = select_personas(personas)
        self.require_all = require_all

    def review_with_persona(self, persona: Persona, assignment: Assignment, diff: str) -> PersonaReview:
        prompt = build_review_prompt(persona, assignment, diff)
        try:
            response = self.agent.run(prompt, cwd=self.repo_path)
        except ProcessError as e:
            return PersonaReview(persona=persona.name, passed=False,
                                 feedback=f"Review error: {e}", reviewed_at=datetime.now())

        if not response.strip():
            return PersonaReview(persona=persona.name, passed=False,
                                 feedback="Agent returned no response", reviewed_at=datetime.now())

        passed, feedback, score = parse_review_response(response)
        return PersonaReview(persona=persona.name, passed=passed, feedback=feedback,
                             reviewed_at=datetime.now(), score=score)

    def review(self, assignment: Assignment, diff: str) -> ReviewResult:
        reviews: list[PersonaReview] = []
        failure_reasons: list[str] = []
        roles = {p.name: p.role for p in self.personas}

        for persona in self.personas:
            review = self.review_with_persona(persona, assignment, diff)
            reviews.append(review)
            logger.info("Issue #%d %s review: %s", assignment.issue_number,
                        persona.name, "PASS" if review.passed else "FAIL")
            if not review.passed:
                failure_reasons.append(f"{roles[persona.name]}: {review.feedback}")
                if self.require_all:
                    break

        passed_count = sum(1 for r in reviews if r.passed)
        if self.require_all:
            overall = passed_count == len(reviews) and len(reviews) == len(self.personas)
        else:
            overall = passed_count * 2 > len(reviews)

        return ReviewResult(
            overall_passed=overall,
            persona_reviews=reviews,
            failure_reasons=failure_reasons or None,
        )


def format_review_feedback(review: ReviewResult, issue_number: int) -> str:
    """Markdown comment posted on the issue when the review gate rejects."""
    lines = [
        "## ❌ Merge Worker: Review Failed",
        "",
        f"The integrated changes for issue #{issue_number} did not pass review.",
        "",
    ]
    for r in review.persona_reviews:
        title = r.persona.replace("-", " ").title()
        status = "✅ PASSED" if r.passed else "❌ FAILED"
        score = f" (score {r.score}/10)" if r.score is not None else ""
        lines += [f"### {title}: {status}{score}", "", r.feedback, ""]

    passed = sum(1 for r in review.persona_reviews if r.passed)
    lines += [
        f"**Passed:** {passed}/{len(review.persona_reviews)}",
        "",
        "### Next Steps",
        "",
        "This issue has been sent back for another round of work. Address the",
        "feedback above; the branch will be re-reviewed once it is dev-complete again.",
    ]
    return "\n".join(lines)
