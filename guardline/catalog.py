"""
Built-in default protocol catalog.

Used whenever an organization has no active template for an alert type,
and as the seed data for ``TemplateStore.seed_defaults()``.  The step
texts, flags and SLA targets are part of the engine's compatibility
surface: executions that started on the default catalog are validated
against these orders, so entries must never be edited in place.  Add a
new revision and bump ``CATALOG_VERSION`` instead.

Alert types without an entry fall back to ``general``.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from guardline.models import AlertType, ProtocolStep

CATALOG_VERSION = "2024.1"


class DefaultProtocol(BaseModel):
    """A read-only default protocol for one alert type."""

    name: str
    name_ar: str
    sla_minutes: int = Field(..., gt=0)
    steps: list[ProtocolStep]


def _steps(*rows: tuple) -> list[ProtocolStep]:
    # (title, title_ar, is_required[, photo_required])
    steps = []
    for order, row in enumerate(rows, start=1):
        title, title_ar, is_required = row[:3]
        photo_required = row[3] if len(row) > 3 else False
        steps.append(ProtocolStep(
            order=order,
            title=title,
            title_ar=title_ar,
            is_required=is_required,
            photo_required=photo_required,
        ))
    return steps


DEFAULT_PROTOCOL_TEMPLATES: dict[str, DefaultProtocol] = {
    AlertType.PANIC.value: DefaultProtocol(
        name="Panic Button Response Protocol",
        name_ar="بروتوكول الاستجابة لزر الذعر",
        sla_minutes=5,
        steps=_steps(
            ("Locate the person who triggered the alarm", "تحديد موقع الشخص الذي أطلق الإنذار", True),
            ("Assess immediate danger level and situation", "تقييم مستوى الخطر الفوري والموقف", True),
            ("Request backup if necessary", "طلب الدعم إذا لزم الأمر", False),
            ("Provide immediate assistance", "تقديم المساعدة الفورية", True),
            ("Secure the area and remove threats", "تأمين المنطقة وإزالة التهديدات", True),
            ("Document incident with photos", "توثيق الحادث بالصور", True, True),
            ("Notify security supervisor", "إخطار مشرف الأمن", True),
            ("Complete incident report", "إكمال تقرير الحادث", True),
        ),
    ),
    AlertType.MEDICAL.value: DefaultProtocol(
        name="Medical Emergency Response Protocol",
        name_ar="بروتوكول الاستجابة للطوارئ الطبية",
        sla_minutes=3,
        steps=_steps(
            ("Call emergency medical services (997/911)", "الاتصال بخدمات الطوارئ الطبية (997/911)", True),
            ("Locate the injured person", "تحديد موقع الشخص المصاب", True),
            ("Assess vital signs if trained", "تقييم العلامات الحيوية إذا كنت مدربًا", True),
            ("Provide first aid within training limits", "تقديم الإسعافات الأولية ضمن حدود التدريب", True),
            ("Keep the person calm and comfortable", "إبقاء الشخص هادئًا ومرتاحًا", True),
            ("Clear path for emergency responders", "تمهيد الطريق للمسعفين", True),
            ("Document injuries with photos", "توثيق الإصابات بالصور", False, True),
            ("Guide ambulance to exact location", "توجيه سيارة الإسعاف للموقع الدقيق", True),
            ("Notify management and HR", "إخطار الإدارة والموارد البشرية", True),
            ("Complete medical incident report", "إكمال تقرير الحادث الطبي", True),
        ),
    ),
    AlertType.FIRE.value: DefaultProtocol(
        name="Fire Emergency Response Protocol",
        name_ar="بروتوكول الاستجابة لطوارئ الحريق",
        sla_minutes=2,
        steps=_steps(
            ("Activate fire alarm if not already active", "تفعيل إنذار الحريق إذا لم يكن مفعلاً", True),
            ("Call fire department (997/911)", "الاتصال بالدفاع المدني (997/911)", True),
            ("Evacuate all personnel via nearest exit", "إخلاء جميع الأشخاص عبر أقرب مخرج", True),
            ("Account for all personnel at assembly point", "حصر جميع الأشخاص في نقطة التجمع", True),
            ("Only attempt fire suppression if safe", "محاولة إطفاء الحريق فقط إذا كان آمنًا", False),
            ("Shut off gas and electrical if accessible", "إغلاق الغاز والكهرباء إذا كان يمكن الوصول", False),
            ("Document fire location and spread", "توثيق موقع الحريق وانتشاره", True, True),
            ("Guide fire department to location", "توجيه الدفاع المدني للموقع", True),
            ("Prevent re-entry until cleared", "منع الدخول حتى يتم التصريح", True),
            ("Complete fire incident report", "إكمال تقرير حادث الحريق", True),
        ),
    ),
    AlertType.SECURITY_BREACH.value: DefaultProtocol(
        name="Security Breach Response Protocol",
        name_ar="بروتوكول الاستجابة للاختراق الأمني",
        sla_minutes=5,
        steps=_steps(
            ("Alert all security personnel", "تنبيه جميع أفراد الأمن", True),
            ("Identify breach location and type", "تحديد موقع ونوع الاختراق", True),
            ("Lock down affected area", "إغلاق المنطقة المتأثرة", True),
            ("Track and identify intruder(s)", "تتبع وتحديد المتسللين", True),
            ("Request police assistance if needed", "طلب مساعدة الشرطة إذا لزم الأمر", False),
            ("Secure valuable assets and documents", "تأمين الأصول والوثائق القيمة", True),
            ("Document evidence with photos", "توثيق الأدلة بالصور", True, True),
            ("Review CCTV footage", "مراجعة تسجيلات الكاميرات", True),
            ("Detain suspect if safe to do so", "احتجاز المشتبه به إذا كان آمنًا", False),
            ("Complete security breach report", "إكمال تقرير الاختراق الأمني", True),
        ),
    ),
    AlertType.GENERAL.value: DefaultProtocol(
        name="General Emergency Response Protocol",
        name_ar="بروتوكول الاستجابة للطوارئ العامة",
        sla_minutes=10,
        steps=_steps(
            ("Assess the situation", "تقييم الموقف", True),
            ("Secure the area", "تأمين المنطقة", True),
            ("Contact emergency services if needed", "الاتصال بخدمات الطوارئ إذا لزم الأمر", False),
            ("Document the incident with photos", "توثيق الحادث بالصور", True, True),
            ("Notify management", "إخطار الإدارة", True),
            ("Complete incident report", "إكمال تقرير الحادث", True),
        ),
    ),
}


def default_protocol_for(alert_type: str) -> DefaultProtocol:
    """Return the default protocol for ``alert_type``, or ``general``."""
    return DEFAULT_PROTOCOL_TEMPLATES.get(
        alert_type, DEFAULT_PROTOCOL_TEMPLATES[AlertType.GENERAL.value]
    )


def default_steps_for(alert_type: str) -> list[ProtocolStep]:
    """Return copies of the default steps so callers cannot mutate the catalog."""
    return [s.model_copy(deep=True) for s in default_protocol_for(alert_type).steps]
