from django.urls import path
from . import views

app_name = "programming"

urlpatterns = [
    # Question package
    path("questions/<int:pk>/package/", views.upload_package, name="upload_package"),
    path("questions/<int:pk>/online-editor/", views.save_online_editor, name="save_online_editor"),
    path("questions/<int:pk>/settings/", views.update_settings, name="update_settings"),

    # Evaluation jobs
    path("jobs/<uuid:job_id>/", views.job_status, name="job_status"),
    path("jobs/<uuid:job_id>/cancel/", views.cancel_job, name="cancel_job"),

    # Answers
    path("answers/<int:pk>/grade/", views.grade_answer, name="grade_answer"),
]
