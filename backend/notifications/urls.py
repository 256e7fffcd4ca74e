from django.urls import path
from . import views

app_name = 'notifications'

urlpatterns = [
    path('preferences/', views.notification_preferences, name='preferences'),
    path('push-subscriptions/', views.register_push_subscription, name='push-subscriptions'),
]
