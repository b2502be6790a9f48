from __future__ import annotations

import hashlib
import json
import re
from pathlib import Path

from fidelis.harness.classifier import ALLOWED_LABELS
from fidelis.harness.config import clamp_repetitions
from fidelis.harness.contracts import Contract, ContractMode, Prompt, ScriptProvenance
from fidelis.harness.errors import ContractError, PromptSourceError

STRUCTURED_SCRIPT_ID = "json_contract_brutal_v2"
STRUCTURED_SYSTEM_PROMPT = (
    "You are a deterministic JSON output engine. "
    "Return exactly one compact JSON object under strict key order and schema."
)
STRUCTURED_MAX_TOKENS_CAP = 48
STRUCTURED_OUTPUT_PATTERN = re.compile(
    r'^\{"result":\{"answer":"([ABCD])","confidence":0\.75\},"meta":\{"version":1\}\}$'
)

SCRIPT_LABELS: dict[str, str] = {
    "online_gsm8k_exact_answer_contract.jsonl": "GSM8K Exact-Answer Contract",
    "online_boolq_true_false_contract.jsonl": "BoolQ True/False Contract",
    "online_arc_challenge_answerkey_contract.jsonl": "ARC Challenge Label Contract",
    "online_arc_easy_answerkey_contract.jsonl": "ARC Easy Label Contract",
    "online_commonsenseqa_answerkey_contract.jsonl": "CommonsenseQA Label Contract",
    "online_openbookqa_answerkey_contract.jsonl": "OpenBookQA Label Contract",
    "online_winogrande_option_contract.jsonl": "WinoGrande Option Contract",
    "online_svamp_exact_answer_contract.jsonl": "SVAMP Exact-Answer Contract",
    "online_asdiv_exact_answer_contract.jsonl": "ASDiv Exact-Answer Contract",
    "online_hellaswag_label_contract.jsonl": "HellaSwag Label Contract",
    STRUCTURED_SCRIPT_ID: "Structured JSON Contract (generated)",
}

_DECLARED_LITERAL_MARKER = re.compile(r"Output exactly this final literal and nothing else:\s*([^\n]+)", re.IGNORECASE)
_DECLARED_LITERAL_STOPS = (
    " Problem:",
    " Question:",
    " Context:",
    " Passage:",
    " Allowed tokens:",
    " Use option label",
    " Use one digit",
    " Choices:",
)


def structured_literal(label: str) -> str:
    return f'{{"result":{{"answer":"{label}","confidence":0.75}},"meta":{{"version":1}}}}'


def build_structured_prompt(expected_label: str, expected_literal: str) -> str:
    return "\n".join(
        [
            "You must output EXACTLY one JSON object.",
            "No markdown.",
            "No explanation.",
            "No additional text.",
            "No leading or trailing whitespace.",
            "No newline before or after the object.",
            "No spaces anywhere in the output.",
            "",
            "Schema:",
            structured_literal("X"),
            "",
            'Where X must be exactly one of: "A","B","C","D"',
            "Key order rules:",
            "1) Top-level keys must be exactly: result, then meta",
            "2) result keys must be exactly: answer, then confidence",
            "3) meta keys must be exactly: version",
            "4) No extra keys and no nested extras",
            "",
            "Return ONLY the JSON object.",
            "Replace X with the correct expected label.",
            f"Expected label: {expected_label}",
            "",
            f"The only valid output for this turn is exactly: {expected_literal}",
            f"Exact character count must be: {len(expected_literal)}",
            "First character must be '{' and last character must be '}'.",
        ]
    )


def generate_structured_prompts(repetitions: int) -> list[Prompt]:
    count = clamp_repetitions(repetitions)
    prompts: list[Prompt] = []
    for index in range(count):
        label = ALLOWED_LABELS[index % len(ALLOWED_LABELS)]
        literal = structured_literal(label)
        prompts.append(
            Prompt(
                text=build_structured_prompt(label, literal),
                id=index + 1,
                expected_literal=literal,
                expected_label=label,
                category=STRUCTURED_SCRIPT_ID,
                expected_behavior="Return one compact nested JSON object only under strict deterministic contract.",
            )
        )
    return prompts


def load_script_prompts(path: str | Path, limit: int = 0) -> list[Prompt]:
    script_path = Path(path)
    try:
        text = script_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise PromptSourceError(f"unable to load script {script_path}: {exc}") from exc

    prompts: list[Prompt] = []
    for line_no, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError as exc:
            raise PromptSourceError(f"{script_path.name}:{line_no}: invalid JSON record ({exc.msg})") from exc
        if not isinstance(record, dict):
            raise PromptSourceError(f"{script_path.name}:{line_no}: record must be a JSON object")
        try:
            prompts.append(Prompt.from_record(record))
        except ValueError as exc:
            raise PromptSourceError(f"{script_path.name}:{line_no}: {exc}") from exc
        if limit > 0 and len(prompts) >= limit:
            break
    return prompts


def normalize_expected_literal(prompt: Prompt) -> str | None:
    candidate = prompt.expected_literal
    if candidate is None:
        return None
    if not isinstance(candidate, str):
        raise ContractError(f"expected_literal must be a string, got {type(candidate).__name__}")
    trimmed = candidate.strip()
    if not trimmed:
        raise ContractError("expected_literal is blank")
    return trimmed


def resolve_contract(prompt: Prompt, mode: ContractMode) -> Contract:
    literal = normalize_expected_literal(prompt)
    if literal is None:
        return Contract()
    if mode != ContractMode.STRUCTURED:
        return Contract(expected_literal=literal)

    label = prompt.expected_label.strip() if isinstance(prompt.expected_label, str) else None
    if not label:
        match = STRUCTURED_OUTPUT_PATTERN.match(literal)
        label = match.group(1) if match else None
    if label not in ALLOWED_LABELS:
        raise ContractError(f"structured contract needs a label in {','.join(ALLOWED_LABELS)}, got {label!r}")
    return Contract(expected_literal=literal, expected_label=label, structured=True)


def extract_prompt_declared_literal(prompt_text: str) -> str | None:
    match = _DECLARED_LITERAL_MARKER.search(prompt_text)
    if not match:
        return None
    value = match.group(1).strip()
    for marker in _DECLARED_LITERAL_STOPS:
        index = value.find(marker)
        if index >= 0:
            value = value[:index].strip()
    return value or None


def script_provenance(path: str | Path | None, script_id: str | None = None) -> ScriptProvenance:
    if path is None:
        sid = script_id or STRUCTURED_SCRIPT_ID
        return ScriptProvenance(script_id=sid, script_label=SCRIPT_LABELS.get(sid, sid), script_path="(generated)")
    script_path = Path(path)
    raw = script_path.read_bytes()
    sid = script_id or script_path.name
    line_count = sum(1 for line in raw.decode("utf-8").splitlines() if line.strip())
    return ScriptProvenance(
        script_id=sid,
        script_label=SCRIPT_LABELS.get(sid, sid),
        script_path=str(script_path),
        script_sha256=hashlib.sha256(raw).hexdigest(),
        script_line_count=line_count,
    )
