from django.db import models


class Team(models.Model):
    name = models.CharField(max_length=255, unique=True)
    logo = models.URLField(blank=True, null=True)
    is_custom = models.BooleanField(default=False)

    def __str__(self):
        return self.name
