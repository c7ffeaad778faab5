from __future__ import annotations

from caption_localizer.jobs.models import JobStatus, ProcessingStep

_MESSAGES: dict[JobStatus, dict[str, str]] = {
    JobStatus.queued: {
        "en": "Job queued for processing",
        "es": "Trabajo en cola para procesamiento",
        "fr": "Tâche mise en file d'attente pour traitement",
        "hi": "कार्य प्रसंस्करण के लिए कतारबद्ध है",
        "vi": "Công việc đã được đưa vào hàng đợi để xử lý",
    },
    JobStatus.downloading: {
        "en": "Fetching source video...",
        "es": "Obteniendo el video de origen...",
        "fr": "Récupération de la vidéo source...",
        "hi": "स्रोत वीडियो प्राप्त किया जा रहा है...",
        "vi": "Đang tải video nguồn...",
    },
    JobStatus.probing: {
        "en": "Validating video...",
        "es": "Validando video...",
        "fr": "Validation de la vidéo...",
        "hi": "वीडियो की जाँच हो रही है...",
        "vi": "Đang kiểm tra video...",
    },
    JobStatus.transcribing: {
        "en": "Transcribing audio...",
        "es": "Transcribiendo audio...",
        "fr": "Transcription audio en cours...",
        "hi": "ऑडियो ट्रांस्क्रिप्शन हो रहा है...",
        "vi": "Đang phiên âm audio...",
    },
    JobStatus.translating: {
        "en": "Translating content...",
        "es": "Traduciendo contenido...",
        "fr": "Traduction du contenu en cours...",
        "hi": "सामग्री का अनुवाद हो रहा है...",
        "vi": "Đang dịch nội dung...",
    },
    JobStatus.rendering: {
        "en": "Rendering video with subtitles...",
        "es": "Renderizando video con subtítulos...",
        "fr": "Rendu vidéo avec sous-titres en cours...",
        "hi": "सबटाइटल के साथ वीडियो रेंडर हो रहा है...",
        "vi": "Đang render video với phụ đề...",
    },
    JobStatus.uploading: {
        "en": "Uploading final result...",
        "es": "Subiendo resultado final...",
        "fr": "Téléchargement du résultat final...",
        "hi": "अंतिम परिणाम अपलोड हो रहा है...",
        "vi": "Đang tải lên kết quả cuối cùng...",
    },
    JobStatus.done: {
        "en": "Processing completed successfully",
        "es": "Procesamiento completado con éxito",
        "fr": "Traitement terminé avec succès",
        "hi": "प्रसंस्करण सफलतापूर्वक पूर्ण हुआ",
        "vi": "Xử lý hoàn thành thành công",
    },
    JobStatus.failed: {
        "en": "Processing failed",
        "es": "Procesamiento fallido",
        "fr": "Traitement échoué",
        "hi": "प्रसंस्करण विफल",
        "vi": "Xử lý thất bại",
    },
    JobStatus.cancelled: {
        "en": "Processing cancelled",
        "es": "Procesamiento cancelado",
        "fr": "Traitement annulé",
        "hi": "प्रसंस्करण रद्द किया गया",
        "vi": "Đã hủy xử lý",
    },
}

# (id, name, phase, estimated seconds)
_PLAN = (
    ("transcribe", "Transcription", "transcribe", 30.0),
    ("translate", "Translation", "translate", 20.0),
    ("render", "Caption render", "caption_burn", 60.0),
    ("upload", "Upload", "upload", 10.0),
)


def status_message(status: JobStatus, language: str | None = None) -> str:
    table = _MESSAGES.get(status, {})
    lang = str(language or "en").lower()
    return table.get(lang) or table.get("en") or f"Processing {status.value}..."


def processing_plan(*, source_language: str, target_language: str) -> list[ProcessingStep]:
    """
    Steps a job is expected to run; translation only when the languages differ.
    """
    translate = str(source_language).lower() != str(target_language).lower()
    return [
        ProcessingStep(id=sid, name=name, phase=phase, estimated_duration_s=est)
        for sid, name, phase, est in _PLAN
        if sid != "translate" or translate
    ]
