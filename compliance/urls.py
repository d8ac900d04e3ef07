from django.urls import path
from . import views

app_name = 'compliance'

urlpatterns = [

    # ============================================================================
    # CREDITS
    # ============================================================================

    path('credits/calculate/', views.CalculateCreditsView.as_view(), name='calculate_credits'),
    path('credits/cycle/<uuid:practitioner_id>/', views.CurrentCycleView.as_view(), name='current_cycle'),
    path('credits/history/<uuid:practitioner_id>/', views.CreditHistoryView.as_view(), name='credit_history'),
    path('credits/category-limit/', views.CategoryLimitView.as_view(), name='category_limit'),

    # Reporting
    path('credits/statistics/', views.ComplianceStatisticsView.as_view(), name='statistics'),
    path('credits/units/', views.UnitComparisonView.as_view(), name='unit_comparison'),

    # ============================================================================
    # SUBMISSION WORKFLOW
    # ============================================================================

    path('submissions/bulk/', views.BulkReviewView.as_view(), name='bulk_review'),
    path('submissions/<uuid:submission_id>/', views.SubmissionDetailView.as_view(), name='submission_detail'),
    path(
        'submissions/<uuid:submission_id>/<str:action>/',
        views.SubmissionReviewView.as_view(),
        name='submission_review'
    ),
]
