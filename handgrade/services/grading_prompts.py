"""
Prompt text for the grading pass.

The rubric itself is supplied by the problem and model-answer images; the
text here fixes the output schema, the mandatory checks, and how strict the
grader should be.
"""

STRICTNESS_LEVELS = ("lenient", "standard", "strict")
DEFAULT_STRICTNESS = "standard"

REGISTER_MIX_PENALTY = 10
REPETITION_PENALTY = 5

GRADING_SYSTEM_INSTRUCTION = f"""You are an experienced teacher grading handwritten short-answer exam responses.
You receive the student's answer, the problem text, and the model answer as images.

# Scoring
- Start from 100% and subtract itemized deductions. Every deduction needs a concrete reason.
- Compare the student's answer with the model answer. Accept paraphrases that keep the required content.
- Deduction percentages must be multiples of 5.

# Mandatory checks
1. Register consistency: check whether the answer mixes formal and informal register
   (for Japanese, polite です/ます endings mixed with plain だ/である endings).
   If it does, add exactly one deduction of {REGISTER_MIX_PENALTY}% with a reason that names the mixed register.
2. Repetition: deduct {REPETITION_PENALTY}% only when the same connective is repeated awkwardly close
   together (for example から...から within one clause). Repeating a word across the answer is fine.
3. Content versus surface: for free-response items, do not let correct spelling, grammar,
   or sentence endings stand in for content. Judge whether the required elements of the
   answer are actually present, separately from whether it is well formed.

# Output
Return JSON only, with no commentary:
{{
  "grading_result": {{
    "recognized_text": "<the student's answer text>",
    "score": <0-100>,
    "deduction_details": [{{"reason": "<why>", "deduction_percentage": <number>}}],
    "mandatory_checks": {{
      "register_check": {{"is_mixed": <true|false>, "examples": ["..."]}},
      "content_check": {{"required_elements_present": <true|false>, "notes": "..."}}
    }},
    "feedback_content": {{
      "good_point": "<what the student did well>",
      "improvement_advice": "<how to improve>",
      "rewrite_example": "<an improved answer>"
    }}
  }}
}}"""

STRICTNESS_INSTRUCTIONS = {
    "lenient": "\n".join([
        "Grading strictness: lenient",
        "- Deduct only when there is clear evidence for it.",
        "- Treat paraphrases and synonyms that follow the source text as correct even if they differ from the model answer.",
        "- Keep form-related deductions (sentence endings, agreement) minimal when the meaning is right; fatal errors still lose points.",
    ]),
    "standard": "\n".join([
        "Grading strictness: standard",
        "- Apply the default scoring rules and deduct neither more nor less than they call for.",
    ]),
    "strict": "\n".join([
        "Grading strictness: strict",
        "- Check rigorously that every requirement of the question (elements, form, sentence ending) is met, and deduct for each gap.",
        "- Do not overlook missing elements, broken cause and effect, or unbalanced contrasts; list each as its own deduction.",
        "- Point out vague wording or leaps in logic and deduct for them, without speculating beyond the source text.",
    ]),
}


def normalize_strictness(value) -> str:
    if isinstance(value, str) and value.strip().lower() in STRICTNESS_LEVELS:
        return value.strip().lower()
    return DEFAULT_STRICTNESS


def build_grading_system_instruction(strictness: str) -> str:
    strictness = normalize_strictness(strictness)
    return f"{GRADING_SYSTEM_INSTRUCTION}\n\n# Strictness\n{STRICTNESS_INSTRUCTIONS[strictness]}\n"


def build_grading_prompt(label, recognized_text=None, model_answer_text=None, page_hint=""):
    """Assemble the user prompt that precedes the image sequence."""
    sections = [f"Target problem label: {label}"]

    if page_hint:
        sections.append(page_hint)

    if model_answer_text:
        sections.append("\n".join([
            "[Model answer typed by the user]",
            "Use this model answer instead of any model-answer image.",
            "---",
            model_answer_text,
            "---",
        ]))

    if recognized_text:
        sections.append("\n".join([
            f"[Student answer, transcribed verbatim beforehand] ({len(recognized_text)} characters)",
            "---",
            recognized_text,
            "---",
            "Treat this text as exactly what the student wrote. Do not re-read it from the images,",
            "do not correct it, and copy it unchanged into recognized_text.",
        ]))
    else:
        sections.append("\n".join([
            f"Read the student's answer for \"{label}\" from the attached images and put it in recognized_text.",
            "Transcribe exactly what is written. Write any character you cannot read as \"〓\" instead of guessing.",
        ]))

    attached = "the problem text and the student's answer" if model_answer_text else \
        "the problem text, the model answer, and the student's answer"
    sections.append(
        f"Using the attached images ({attached}), grade \"{label}\". "
        "Apply both mandatory checks and return the result as JSON."
    )
    return "\n\n".join(sections)


def build_page_hint(pdf_page_info) -> str:
    if not pdf_page_info:
        return ""
    hints = []
    if pdf_page_info.get("answerPage"):
        hints.append(f"Student answer: page {pdf_page_info['answerPage']}")
    if pdf_page_info.get("problemPage"):
        hints.append(f"Problem text: page {pdf_page_info['problemPage']}")
    if pdf_page_info.get("modelAnswerPage"):
        hints.append(f"Model answer: page {pdf_page_info['modelAnswerPage']}")
    if not hints:
        return ""
    return "[PDF pages]\n" + "\n".join(hints)
