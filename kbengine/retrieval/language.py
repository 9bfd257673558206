"""
Script detection and keyword extraction for cross-language query expansion.
"""
import re
from typing import List

_HAN = re.compile(r"[\u4e00-\u9fff]")
_KANA = re.compile(r"[\u3040-\u30ff]")
_HANGUL = re.compile(r"[\uac00-\ud7af]")
_LATIN = re.compile(r"[A-Za-z]")

# Dominant share a script needs; below it the query is "mixed"
_DOMINANCE = 0.6

_CJK_QUESTION_CHARS = re.compile(r"[是什么谁干啥做的吗呢吧呀哪里怎么样如何为什么？?！!。，,、]")
_CJK_RUN = re.compile(r"[\u4e00-\u9fff]{2,4}")
_CJK_STOPWORDS = {
    "介绍", "内容", "什么", "哪些", "怎样", "如何", "为什么", "关于", "请问", "告诉",
    "说说", "讲讲", "一下", "可以", "简历", "资料", "信息", "文档", "文件", "报告",
}

_LATIN_WORD = re.compile(r"[A-Za-z][A-Za-z0-9'\-]{2,}")
_LATIN_STOPWORDS = {
    "the", "and", "for", "are", "was", "were", "what", "who", "whom", "which", "when", "where",
    "why", "how", "does", "did", "can", "could", "would", "should", "about", "tell", "please",
    "this", "that", "these", "those", "with", "from", "into", "there", "their", "have", "has",
    "had", "you", "your", "any", "some", "document", "documents", "file", "files", "info",
    "information", "explain", "describe", "give", "show", "list",
}


def detect_language(text: str) -> str:
    """
    Dominant language of ``text`` by character-class counts.

    Returns one of ``zh``, ``ja``, ``ko``, ``en``, ``mixed`` or ``unknown``
    (no letters at all).
    """
    han = len(_HAN.findall(text))
    kana = len(_KANA.findall(text))
    hangul = len(_HANGUL.findall(text))
    latin = len(_LATIN.findall(text))
    total = han + kana + hangul + latin
    if total == 0:
        return "unknown"

    if kana and (kana + han) / total >= _DOMINANCE:
        return "ja"
    if hangul / total >= _DOMINANCE:
        return "ko"
    if han / total >= _DOMINANCE:
        return "zh"
    if latin / total >= _DOMINANCE:
        return "en"
    return "mixed"


def extract_core_keywords(query: str, limit: int = 3) -> List[str]:
    """Content words of ``query`` with interrogatives and stop words removed."""
    keywords: List[str] = []
    stripped = _CJK_QUESTION_CHARS.sub(" ", query)
    for run in _CJK_RUN.findall(stripped):
        if run not in _CJK_STOPWORDS and run not in keywords:
            keywords.append(run)
    for word in _LATIN_WORD.findall(query):
        lowered = word.lower()
        if lowered not in _LATIN_STOPWORDS and lowered not in (k.lower() for k in keywords):
            keywords.append(word)
    return keywords[:limit]


def generate_query_expansions(query: str, keywords: List[str]) -> List[str]:
    """Original query, each keyword, then the first two keywords combined."""
    variants = [query]
    for keyword in keywords:
        if keyword not in variants:
            variants.append(keyword)
    if len(keywords) >= 2:
        combined = f"{keywords[0]} {keywords[1]}"
        if combined not in variants:
            variants.append(combined)
    return variants
