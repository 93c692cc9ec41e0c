import re

MODES = ("summary", "detail")
LANGS = ("en", "ja")

BRIDGE_CAP = 400
HINT_MAX_CHARS = 160

_NO_HINT = {"en": "(none)", "ja": "(特になし)"}
_PREVIOUS_SUMMARY = {"en": "Previous segment summary:\n{bridge}\n\n", "ja": "前セグメントの要約:\n{bridge}\n\n"}
_BRIDGE_LABEL = {"en": "Prev: ", "ja": "前要約: "}

_LANGUAGE_POLICY_EN = (
    "LANGUAGE POLICY: Output only in English. If any on-screen text, UI labels, or speech are in Japanese or any "
    "non-English language, translate all content into natural English. Do not include non-English text unless "
    "essential for clarity."
)

DETAIL_EN = f"""You are an expert at analyzing screen recordings. Output in the following structure.

{_LANGUAGE_POLICY_EN}

Reference (optional): {{hint}}

## Overview
[Summarize the file name and the whole video in 2–3 lines]

## Duration
[Length of the video]

## Business Inference
[Infer what the operator is looking at and trying to verify]

## Business Details
[Describe so that others can reproduce the same work exactly]

### Step 1: [Step name] [Duration xx min]
**Timestamp:** [Relevant time in the video (e.g., 00:45 or 00:45–01:20)]
**Used Tool:** [Specific tool name inferred from the video, e.g., Google Chrome / Excel / VS Code / Slack / Jira / GitHub / Terminal / Finder / Figma]
- Concrete operation 1
- Concrete operation 2
- Concrete operation 3

**Business Inference:** [What the operator intends to check/verify in this step]

### Step 2: [Step name] [Duration xx min]
**Timestamp:** [Relevant time in the video (e.g., 02:10 or 01:20–02:00)]
**Used Tool:** [Specific tool name]
- Concrete operation 1
- Concrete operation 2

**Business Inference:** [What the operator intends in this step]

[Add more steps as needed]

In Business Details, write each step's duration as [Duration xx min], always include a **Timestamp** (single time or start–end range) and **Used Tool** (use specific product names when possible), and add **Business Inference:** after each step. For operations, include button/menu names, input values, click targets, keyboard actions, screen transitions, etc., at a granularity that allows exact reproduction."""

SUMMARY_EN = f"""You are an expert at analyzing screen recordings. Output concisely in the structure below (about 500–800 chars total).

{_LANGUAGE_POLICY_EN}

Reference (optional): {{hint}}

## Overview
[Summarize the file name and the whole video in 1–2 lines]

## Key Points
- [3–6 bullet points of the most important operations/checks]

## Duration
[Length of the video]

## Next Actions
- [2–3 actions to take after watching]

## Business Details (Brief)
[List 2–4 main steps, each as below. Include [Duration xx min] in each step heading.]

### Step 1: [Step name] [Duration xx min]
**Timestamp:** [Relevant time in the video (e.g., 00:45 or 00:45–01:20)]
**Used Tool:** [Specific tool name inferred from the video]
- Representative operation 1 (concise)
- Representative operation 2 (concise)

**Business Inference:** [One-line purpose/intention of the step]

### Step 2: [Step name] [Duration xx min]
**Timestamp:** [Relevant time in the video]
**Used Tool:** [Specific tool name]
- Representative operation 1 (concise)
- Representative operation 2 (concise)

**Business Inference:** [One-line purpose/intention]

[Add more steps if needed (max 4)]
"""

DETAIL_JA = """あなたは動画解析の専門家です。以下の構造で出力してください：

参考情報（任意）: {hint}

## 概要
[ファイル名と動画全体の内容を2-3行で要約]

## 所要時間
[動画の長さ]

## 解説
[作業者が画面のどの部分を見ているか、何を確認しようとしているかを推察して記述]

## 業務詳細
[他の人が同じ作業を再現できるよう、以下の形式で詳細に記述]

### ステップ1: [ステップ名] 【所要時間xx分】
**タイムスタンプ:** [動画上の該当箇所（例: 00:45 または 00:45–01:20）]
**使用ツール:** [動画の内容から推察した具体的なツール名。例: Google Chrome / Excel / VS Code / Slack / Jira / GitHub / Terminal / Finder / Figma など製品名やSaaS名]
- 具体的な操作1
- 具体的な操作2
- 具体的な操作3

**解説:** [このステップで作業者が何を確認・検証しようとしているかを推察]

### ステップ2: [ステップ名] 【所要時間xx分】
**タイムスタンプ:** [動画上の該当箇所（例: 02:10 または 01:20–02:00）]
**使用ツール:** [動画の内容から推察した具体的なツール名]
- 具体的な操作1
- 具体的な操作2

**解説:** [このステップで作業者が何を確認・検証しようとしているかを推察]

[必要に応じてステップを追加]

業務詳細では、各ステップの所要時間を【所要時間xx分】の形式で記載し、各ステップで**タイムスタンプ**（単一時刻または開始–終了の範囲）と**使用ツール**を明記し、各ステップの後に**解説:**として作業者の意図を推察してください。操作詳細では、ボタン名、メニュー名、入力値、クリック位置、キーボード操作、画面遷移など、第三者が同じ作業を完全に再現できる粒度で記述してください。"""

SUMMARY_JA = """あなたは動画解析の専門家です。以下の構造で簡潔に出力してください（全体で500〜800字程度）：

参考情報（任意）: {hint}

## 概要
[ファイル名と動画全体の内容を1-2行で要約]

## 重要ポイント
- [最重要の操作・確認 3-6個の箇条書き]

## 所要時間
[動画の長さ]

## 次のアクション
- [視聴後に取るべきアクション 2-3個]

## 業務詳細（簡略）
[主要なステップを2〜4つ、各ステップは以下の形式で簡潔に記述。各ステップの見出しに【所要時間xx分】を含めてください]

### ステップ1: [ステップ名] 【所要時間xx分】
**タイムスタンプ:** [動画上の該当箇所（例: 00:45 または 00:45–01:20）]
**使用ツール:** [動画の内容から推察した具体的なツール名]
- 代表的な操作1（簡潔）
- 代表的な操作2（簡潔）

**解説:** [このステップの目的・意図を1行で]

### ステップ2: [ステップ名] 【所要時間xx分】
**タイムスタンプ:** [動画上の該当箇所]
**使用ツール:** [動画の内容から推察した具体的なツール名]
- 代表的な操作1（簡潔）
- 代表的な操作2（簡潔）

**解説:** [このステップの目的・意図を1行で]

[必要に応じてステップを追加（最大4つまで）]
"""

TEMPLATES = {
    ("summary", "en"): SUMMARY_EN,
    ("summary", "ja"): SUMMARY_JA,
    ("detail", "en"): DETAIL_EN,
    ("detail", "ja"): DETAIL_JA,
}

_FENCED_CODE_RE = re.compile(r"```.*?```", re.DOTALL)
_MARKDOWN_MARKS_RE = re.compile(r"[#*_>`-]")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_hint(hint: str | None) -> str:
    return (hint or "").strip()[:HINT_MAX_CHARS]


def compose_prompt(mode: str, lang: str, hint: str | None = None, bridge_summary: str | None = None) -> str:
    """Deterministic prompt text for one segment; only the hint and the previous-segment block vary."""
    if (mode, lang) not in TEMPLATES:
        raise ValueError(f"unsupported mode/lang: {mode}/{lang}")
    hint_text = normalize_hint(hint) or _NO_HINT[lang]
    prompt = TEMPLATES[(mode, lang)].format(hint=hint_text)
    if bridge_summary:
        prompt = _PREVIOUS_SUMMARY[lang].format(bridge=bridge_summary) + prompt
    return prompt


def summarize_for_bridge(markdown: str, lang: str, cap: int = BRIDGE_CAP) -> str:
    """Keep the tail of the generated text, stripped of markdown, for the next segment's prompt."""
    text = _FENCED_CODE_RE.sub("", markdown or "")
    text = _MARKDOWN_MARKS_RE.sub("", text)
    text = _WHITESPACE_RE.sub(" ", text).strip()
    tail = text[-cap:] if cap > 0 else ""
    return _BRIDGE_LABEL.get(lang, _BRIDGE_LABEL["en"]) + tail
