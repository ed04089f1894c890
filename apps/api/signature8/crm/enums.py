from __future__ import annotations

from enum import Enum


class ProjectStage(str, Enum):
    QUALIFIE = "qualifie"
    PRISE_DE_BESOIN = "prise_de_besoin"
    ACOMPTE_RECU = "acompte_recu"
    CONCEPTION = "conception"
    DEVIS_NEGOCIATION = "devis_negociation"
    ACCEPTE = "accepte"
    REFUSE = "refuse"
    PREMIER_DEPOT = "premier_depot"
    PROJET_EN_COURS = "projet_en_cours"
    CHANTIER = "chantier"
    FACTURE_REGLEE = "facture_reglee"
    LIVRAISON_TERMINE = "livraison_termine"
    PERDU = "perdu"
    ANNULE = "annule"
    SUSPENDU = "suspendu"
    # legacy values still present on stored client rows
    NOUVEAU = "nouveau"
    ACOMPTE_VERSE = "acompte_verse"
    EN_CONCEPTION = "en_conception"
    EN_VALIDATION = "en_validation"
    EN_CHANTIER = "en_chantier"
    LIVRAISON = "livraison"
    TERMINE = "termine"


class StageCategory(str, Enum):
    EN_COURS = "en_cours"
    TERMINE = "termine"
    EN_ATTENTE = "en_attente"
    EXCLUDED = "excluded"


class ContactTag(str, Enum):
    CONVERTED = "converted"
    CLIENT = "client"


class ContactStatus(str, Enum):
    QUALIFIE = "qualifie"
    PRISE_DE_BESOIN = "prise_de_besoin"
    ACOMPTE_RECU = "acompte_recu"
    PERDU = "perdu"


class OpportunityType(str, Enum):
    VILLA = "villa"
    APPARTEMENT = "appartement"
    MAGASIN = "magasin"
    BUREAU = "bureau"
    RIAD = "riad"
    STUDIO = "studio"
    RENOVATION = "renovation"
    AUTRE = "autre"


class OpportunityStatus(str, Enum):
    OPEN = "open"
    WON = "won"
    LOST = "lost"
    ON_HOLD = "on_hold"


class OpportunityStage(str, Enum):
    PRISE_DE_BESOIN = "prise_de_besoin"
    PROJET_ACCEPTE = "projet_accepte"
    ACOMPTE_RECU = "acompte_recu"
    GAGNEE = "gagnee"
    PERDUE = "perdue"


class DevisStatus(str, Enum):
    EN_ATTENTE = "en_attente"
    ACCEPTE = "accepte"
    REFUSE = "refuse"


class PaymentMethod(str, Enum):
    ESPECE = "espece"
    VIREMENT = "virement"
    CHEQUE = "cheque"


class PaymentType(str, Enum):
    ACCOMPTE = "accompte"
    PAIEMENT = "paiement"


class TimelineEventType(str, Enum):
    CONTACT_CREATED = "contact_created"
    CONTACT_CONVERTED_FROM_LEAD = "contact_converted_from_lead"
    OPPORTUNITY_CREATED = "opportunity_created"
    OPPORTUNITY_WON = "opportunity_won"
    OPPORTUNITY_LOST = "opportunity_lost"
    OPPORTUNITY_ON_HOLD = "opportunity_on_hold"
    ARCHITECT_ASSIGNED = "architect_assigned"
    NOTE_ADDED = "note_added"
    STATUS_CHANGED = "status_changed"
    OTHER = "other"


class HistoriqueType(str, Enum):
    STATUT = "statut"
    ACOMPTE = "acompte"
    PAIEMENT = "paiement"
    DEVIS = "devis"
    MODIFICATION = "modification"
    NOTE = "note"


class NotificationKind(str, Enum):
    ARCHITECT_ASSIGNED = "architect_assigned"
    OPPORTUNITY_CREATED = "opportunity_created"
    STAGE_CHANGED = "stage_changed"
    PAYMENT_RECORDED = "payment_recorded"
    RDV_CREATED = "rdv_created"
    RDV_UPDATED = "rdv_updated"
    SYSTEM = "system"


class NotificationPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class UserRole(str, Enum):
    ADMIN = "Admin"
    OPERATOR = "Operator"
    GESTIONNAIRE = "Gestionnaire"
    ARCHITECT = "Architect"
    COMMERCIAL = "Commercial"
    MAGASINER = "Magasiner"
    CHEF_DE_CHANTIER = "Chef de chantier"


STAGE_LABELS: dict[ProjectStage, str] = {
    ProjectStage.QUALIFIE: "Qualifié",
    ProjectStage.PRISE_DE_BESOIN: "Prise de besoin",
    ProjectStage.ACOMPTE_RECU: "Acompte reçu",
    ProjectStage.CONCEPTION: "Conception",
    ProjectStage.DEVIS_NEGOCIATION: "Devis/Négociation",
    ProjectStage.ACCEPTE: "Accepté",
    ProjectStage.REFUSE: "Refusé",
    ProjectStage.PREMIER_DEPOT: "Premier dépôt",
    ProjectStage.PROJET_EN_COURS: "Projet en cours",
    ProjectStage.CHANTIER: "Chantier",
    ProjectStage.FACTURE_REGLEE: "Facture réglée",
    ProjectStage.LIVRAISON_TERMINE: "Livraison & Terminé",
    ProjectStage.PERDU: "Perdu",
    ProjectStage.ANNULE: "Annulé",
    ProjectStage.SUSPENDU: "Suspendu",
}

OPPORTUNITY_TYPE_LABELS: dict[OpportunityType, str] = {
    OpportunityType.VILLA: "Villa",
    OpportunityType.APPARTEMENT: "Appartement",
    OpportunityType.MAGASIN: "Magasin",
    OpportunityType.BUREAU: "Bureau",
    OpportunityType.RIAD: "Riad",
    OpportunityType.STUDIO: "Studio",
    OpportunityType.RENOVATION: "Rénovation",
    OpportunityType.AUTRE: "Autre",
}

PIPELINE_STAGE_LABELS: dict[OpportunityStage, str] = {
    OpportunityStage.PRISE_DE_BESOIN: "📝 Prise de besoin",
    OpportunityStage.PROJET_ACCEPTE: "✅ Projet Accepté",
    OpportunityStage.ACOMPTE_RECU: "💰 Acompte Reçu",
    OpportunityStage.GAGNEE: "🎉 Gagnée",
    OpportunityStage.PERDUE: "❌ Perdue",
}
