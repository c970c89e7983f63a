#!/usr/bin/env python3
"""
Deterministic canned replies used when the AI provider cannot answer.

Order of preference:
1. Keyword retrieval over the knowledge base; quote the best item
2. Category templates (installation, troubleshooting, usage, maintenance)
3. Generic request for more detail

Failure classes other than a missing credential get a short notice in
front of the reply ("busy, retry later", connectivity, ...).
"""

from typing import List, Optional, Sequence, Tuple

from support_rag.errors import ErrorKind, user_message
from support_rag.models import KnowledgeItem, ProjectConfig
from support_rag.scoring import KeywordScorer, get_scorer

SNIPPET_CHARS = 200

NO_KNOWLEDGE_NOTICE = "抱歉，产品知识库中暂未找到与您问题直接相关的信息。"
MULTIMODAL_DISABLED_MESSAGE = "多模态分析功能已禁用，无法分析图片内容。"

# (category, keywords); first match wins
CATEGORIES: List[Tuple[str, Tuple[str, ...]]] = [
    ("installation", ("安装", "install")),
    ("troubleshooting", ("故障", "问题", "error")),
    ("usage", ("使用", "操作", "how")),
    ("maintenance", ("维护", "保养", "maintenance")),
]

_TEMPLATES = {
    "installation": (
        "关于产品安装，建议您：\n\n"
        "1. 仔细阅读产品说明书\n"
        "2. 确保安装环境符合要求\n"
        "3. 按照步骤逐一操作\n"
        "4. 如遇问题请拍照发送给我分析\n\n"
        "如需专业技术支持，请联系：{phone}"
    ),
    "troubleshooting": (
        "遇到产品故障时，请：\n\n"
        "1. 描述具体故障现象\n"
        "2. 提供产品型号信息\n"
        "3. 上传故障现场照片\n"
        "4. 说明使用环境和操作步骤\n\n"
        "我会基于这些信息为您提供解决方案。如需人工客服，请拨打：{phone}"
    ),
    "usage": (
        "关于产品使用方法：\n\n"
        "1. 请先查看产品说明书\n"
        "2. 确保正确连接和设置\n"
        "3. 按照操作指南进行\n"
        "4. 注意安全事项\n\n"
        "如有具体操作问题，请详细描述或上传图片，我会为您提供指导。技术支持热线：{phone}"
    ),
    "maintenance": (
        "产品维护保养建议：\n\n"
        "1. 定期清洁产品表面\n"
        "2. 检查连接部件是否松动\n"
        "3. 避免在恶劣环境中使用\n"
        "4. 按照保养周期进行维护\n\n"
        "具体维护方法请参考说明书，或联系技术支持：{phone}"
    ),
    "generic": (
        "您好！我是智能售后客服助手。\n\n"
        "关于您的问题\"{query}\"，我需要更多信息来为您提供准确的解答。请您：\n\n"
        "1. 详细描述问题情况\n"
        "2. 提供产品型号\n"
        "3. 上传相关图片\n\n"
        "这样我能更好地为您服务。如需人工客服，请拨打：{phone}\n\n"
        "官网：{website}"
    ),
}


def classify_category(query: str) -> str:
    lowered = query.lower()
    for category, keywords in CATEGORIES:
        if any(k in lowered for k in keywords):
            return category
    return "generic"


class CannedResponder:
    """Rule-based replies; never touches the network."""

    def __init__(self, scorer: Optional[KeywordScorer] = None):
        self.scorer = scorer or get_scorer()

    def respond(
        self,
        query: str,
        knowledge_base: Sequence[KnowledgeItem],
        project: Optional[ProjectConfig] = None,
        kind: Optional[ErrorKind] = None,
    ) -> str:
        project = project or ProjectConfig()
        body = self.knowledge_answer(query, knowledge_base, project)
        if body is None:
            body = f"{NO_KNOWLEDGE_NOTICE}\n\n{self.category_answer(query, project)}"
        if kind is not None and kind != ErrorKind.CREDENTIAL:
            return f"{user_message(kind)}\n\n{body}"
        return body

    def knowledge_answer(
        self, query: str, knowledge_base: Sequence[KnowledgeItem], project: ProjectConfig
    ) -> Optional[str]:
        """Quote the best keyword match, or None when nothing matches."""
        hits = self.scorer.rank(query, knowledge_base, top_k=1)
        if not hits:
            return None
        content = hits[0].item.content
        snippet = content[:SNIPPET_CHARS] + ("..." if len(content) > SNIPPET_CHARS else "")
        return (
            f"根据产品知识库，关于\"{query}\"的信息：\n\n"
            f"{snippet}\n\n"
            f"如需更详细信息，请联系{project.company_name}技术支持：{project.support_phone}"
        )

    @staticmethod
    def category_answer(query: str, project: ProjectConfig) -> str:
        template = _TEMPLATES[classify_category(query)]
        return template.format(query=query, phone=project.support_phone, website=project.support_website)

    @staticmethod
    def image_answer(project: Optional[ProjectConfig] = None) -> str:
        """Reply for an uploaded image when vision analysis is unavailable."""
        project = project or ProjectConfig()
        return (
            "图片分析功能需要AI服务支持。\n\n"
            "我看到您上传了图片，但目前AI视觉分析服务需要配置。\n\n"
            "请您：\n"
            "1. 详细描述图片中的问题\n"
            "2. 说明产品型号和使用情况\n"
            "3. 联系技术支持获得专业分析\n\n"
            f"{project.company_name}技术支持：\n"
            f"📞 {project.support_phone}\n"
            f"🌐 {project.support_website}\n\n"
            "我们的技术专家会为您提供详细的图片分析和解决方案。"
        )

    @staticmethod
    def speech_answer(project: Optional[ProjectConfig] = None) -> str:
        project = project or ProjectConfig()
        return f"语音识别功能需要AI服务支持，请使用文字输入或联系人工客服：{project.support_phone}"
