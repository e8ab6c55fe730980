# util/constants.py
class InternalURIs:
    API = "/api"
    V1 = API + "/v1"
    ANALYSES = V1 + "/analyses"
    ANALYSIS_UPLOAD = ANALYSES + "/upload"
    ANALYSIS_STATUS = ANALYSES + "/{job_id}"
    ANALYSIS_CANCEL = ANALYSES + "/{job_id}/cancel"
    QUEUE_STATS = V1 + "/queue/stats"
    QUEUE_JOBS = V1 + "/queue/jobs"
    DOCUMENT_SEARCH = V1 + "/documents/{document_id}/search"


class Placeholders:
    # Substituted when OCR raises or times out; downstream stages still run.
    OCR_FAILED = (
        "Image file processed. OCR extraction failed due to timeout or technical issues. "
        "This may be due to poor image quality, large file size, or server limitations. "
        "Please try with a smaller, clearer image."
    )
    # Substituted when normalized text is shorter than MIN_TEXT_LENGTH.
    LOW_TEXT = (
        "Text extraction yielded very limited text. This may be due to poor image quality, "
        "low resolution, an image-only PDF, or complex formatting. Please try with a clearer, "
        "higher-resolution document."
    )
    ANALYSIS_DISABLED = "AI analysis not enabled for this document"
